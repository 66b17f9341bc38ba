[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "canservices"
version = "0.1.0"
description = "CANopen communication objects: PDO, SYNC and TIME services and SDO protocol definitions"
requires-python = ">=3.10"
dependencies = []
keywords = ["canopen", "can", "pdo", "sync", "time", "sdo", "fieldbus", "embedded"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems :: Controller Area Network (CAN) :: CANopen",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["canservices"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
