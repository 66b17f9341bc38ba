"""SDO protocol definitions and the frame and object dictionary primitives shared by the services."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field
from typing import Any

DEFAULT_CLIENT_TIMEOUT = 1_000
DEFAULT_CLIENT_PROCESS_PERIOD_US = 10_000
DEFAULT_CLIENT_BUFFER_SIZE = 1_000
DEFAULT_SERVER_TIMEOUT = 1_000
CLIENT_PROTOCOL_SWITCH_THRESHOLD = 21
BLOCK_MAX_SIZE = 127
BLOCK_MIN_SIZE = 1
BLOCK_SEQ_SIZE = 7
CLIENT_SERVICE_ID = 0x600
SERVER_SERVICE_ID = 0x580

CS_OFFSET = 5
MASK_CS = 0b111_00000
MASK_TRANSFER_TYPE = 0b10
MASK_SIZE_INDICATED = 0b1
MASK_SIZE_INDICATED_BLOCK = 0b10
MASK_CLIENT_SUBCOMMAND = 0b1
MASK_SERVER_SUBCOMMAND = 0b1
MASK_CLIENT_SUBCOMMAND_BLOCK_UPLOAD = 0b11
MASK_CLIENT_CRC_SUPPORTED = 0b100
MASK_SERVER_CRC_SUPPORTED = 0b1000
MASK_SEQNO = 0x7F
MASK_SEGMENTS_REMAINING = 0x80

CS_ABORT = 4 << CS_OFFSET
CS_DOWNLOAD_INITIATE = 1 << CS_OFFSET
CS_UPLOAD_INITIATE = 2 << CS_OFFSET
CS_DOWNLOAD_BLOCK_INITIATE = 6 << CS_OFFSET
CS_DOWNLOAD_BLOCK_INITIATE_RESP = 5 << CS_OFFSET
CS_DOWNLOAD_SUB_BLOCK_RESP = 2 << CS_OFFSET
CS_UPLOAD_BLOCK_INITIATE = 5 << CS_OFFSET

INITIATE_DOWNLOAD_REQUEST = 0
INITIATE_UPLOAD_REQUEST = 0
TRANSFER_EXPEDITED = 0b1 << 1
TRANSFER_NORMAL = 0b0 << 1
SIZE_INDICATED = 0b1
SIZE_NOT_INDICATED = 0b0
SIZE_INDICATED_BLOCK = 0b1 << 1
SIZE_NOT_INDICATED_BLOCK = 0b0 << 1
CLIENT_CRC_SUPPORTED = 0b1 << 2
CLIENT_CRC_NOT_SUPPORTED = 0b0 << 2
SERVER_CRC_SUPPORTED = 0b1 << 3
SERVER_CRC_NOT_SUPPORTED = 0b0 << 3
SEGMENT_REMAINING = 0b0 << 7
SEGMENT_NOT_REMAINING = 0b1 << 7
SERVER_SUBCOMMAND_BLOCK_DOWNLOAD_RESP = 0b10


class IllegalArgumentError(ValueError):
    """Raised when a service is created with missing or invalid arguments."""


class ODParametersError(Exception):
    """Raised when the object dictionary holds unusable parameters for a service."""


@dataclass
class Frame:
    """A CAN frame: identifier, flags, data length code and up to 8 data bytes."""

    id: int
    flags: int = 0
    dlc: int = 0
    data: bytearray = field(default_factory=lambda: bytearray(8))

    def __post_init__(self) -> None:
        data = bytearray(self.data)
        if len(data) > 8:
            raise ValueError("a CAN frame carries at most 8 data bytes")
        self.data = data + bytearray(8 - len(data))


class ODR(enum.IntEnum):
    """Result codes of object dictionary accesses."""

    PARTIAL = -1
    NO = 0
    OUT_OF_MEM = 1
    UNSUPP_ACCESS = 2
    WRITE_ONLY = 3
    READONLY = 4
    IDX_NOT_EXIST = 5
    NO_MAP = 6
    MAP_LEN = 7
    PAR_INCOMPAT = 8
    DEV_INCOMPAT = 9
    HW = 10
    TYPE_MISMATCH = 11
    DATA_LONG = 12
    DATA_SHORT = 13
    SUB_NOT_EXIST = 14
    INVALID_VALUE = 15
    VALUE_HIGH = 16
    VALUE_LOW = 17
    MAX_LESS_MIN = 18
    NO_RESSOURCE = 19
    GENERAL = 20
    DATA_TRANSF = 21
    DATA_LOC_CTRL = 22
    DATA_DEV_STATE = 23
    OD_MISSING = 24
    NO_DATA = 25


class ODError(Exception):
    """An object dictionary access failed with the given result code."""

    def __init__(self, odr: ODR, message: str | None = None) -> None:
        self.odr = ODR(odr)
        super().__init__(message or f"object dictionary error: {self.odr.name}")


class AbortCode(enum.IntEnum):
    """SDO abort codes."""

    TOGGLE_BIT = 0x05030000
    TIMEOUT = 0x05040000
    CMD = 0x05040001
    BLOCK_SIZE = 0x05040002
    SEQ_NUM = 0x05040003
    CRC = 0x05040004
    OUT_OF_MEM = 0x05040005
    UNSUPPORTED_ACCESS = 0x06010000
    WRITE_ONLY = 0x06010001
    READ_ONLY = 0x06010002
    NOT_EXIST = 0x06020000
    NO_MAP = 0x06040041
    MAP_LEN = 0x06040042
    PARAM_INCOMPAT = 0x06040043
    DEVICE_INCOMPAT = 0x06040047
    HARDWARE = 0x06060000
    TYPE_MISMATCH = 0x06070010
    DATA_LONG = 0x06070012
    DATA_SHORT = 0x06070013
    SUB_UNKNOWN = 0x06090011
    INVALID_VALUE = 0x06090030
    VALUE_HIGH = 0x06090031
    VALUE_LOW = 0x06090032
    MAX_LESS_MIN = 0x06090036
    NO_RESSOURCE = 0x060A0023
    GENERAL = 0x08000000
    DATA_TRANSFER = 0x08000020
    DATA_LOCAL_CONTROL = 0x08000021
    DATA_DEVICE_STATE = 0x08000022
    DATA_OD = 0x08000023
    NO_DATA = 0x08000024

    @classmethod
    def _missing_(cls, value: object) -> AbortCode | None:
        if isinstance(value, int) and 0 <= value <= 0xFFFFFFFF:
            member = int.__new__(cls, value)
            member._name_ = f"UNKNOWN_{value:08X}"
            member._value_ = value
            return member
        return None

    def description(self) -> str:
        """Human readable meaning of the code; unknown codes read as a general error."""
        return _DESCRIPTIONS.get(int(self), _DESCRIPTIONS[AbortCode.GENERAL])


_DESCRIPTIONS: dict[int, str] = {
    AbortCode.TOGGLE_BIT: "Toggle bit not altered",
    AbortCode.TIMEOUT: "SDO protocol timed out",
    AbortCode.CMD: "Command specifier not valid or unknown",
    AbortCode.BLOCK_SIZE: "Invalid block size in block mode",
    AbortCode.SEQ_NUM: "Invalid sequence number in block mode",
    AbortCode.CRC: "CRC error (block mode only)",
    AbortCode.OUT_OF_MEM: "Out of memory",
    AbortCode.UNSUPPORTED_ACCESS: "Unsupported access to an object",
    AbortCode.WRITE_ONLY: "Attempt to read a write only object",
    AbortCode.READ_ONLY: "Attempt to write a read only object",
    AbortCode.NOT_EXIST: "Object does not exist in the object dictionary",
    AbortCode.NO_MAP: "Object cannot be mapped to the PDO",
    AbortCode.MAP_LEN: "Num and len of object to be mapped exceeds PDO len",
    AbortCode.PARAM_INCOMPAT: "General parameter incompatibility reasons",
    AbortCode.DEVICE_INCOMPAT: "General internal incompatibility in device",
    AbortCode.HARDWARE: "Access failed due to hardware error",
    AbortCode.TYPE_MISMATCH: "Data type does not match, length does not match",
    AbortCode.DATA_LONG: "Data type does not match, length too high",
    AbortCode.DATA_SHORT: "Data type does not match, length too short",
    AbortCode.SUB_UNKNOWN: "Sub index does not exist",
    AbortCode.INVALID_VALUE: "Invalid value for parameter (download only)",
    AbortCode.VALUE_HIGH: "Value range of parameter written too high",
    AbortCode.VALUE_LOW: "Value range of parameter written too low",
    AbortCode.MAX_LESS_MIN: "Maximum value is less than minimum value.",
    AbortCode.NO_RESSOURCE: "Resource not available: SDO connection",
    AbortCode.GENERAL: "General error",
    AbortCode.DATA_TRANSFER: "Data cannot be transferred or stored to application",
    AbortCode.DATA_LOCAL_CONTROL: "Data cannot be transferred because of local control",
    AbortCode.DATA_DEVICE_STATE: "Data cannot be tran. because of present device state",
    AbortCode.DATA_OD: "Object dict. not present or dynamic generation fails",
    AbortCode.NO_DATA: "No data available",
}

_OD_TO_ABORT: dict[ODR, AbortCode] = {
    ODR.OUT_OF_MEM: AbortCode.OUT_OF_MEM,
    ODR.UNSUPP_ACCESS: AbortCode.UNSUPPORTED_ACCESS,
    ODR.WRITE_ONLY: AbortCode.WRITE_ONLY,
    ODR.READONLY: AbortCode.READ_ONLY,
    ODR.IDX_NOT_EXIST: AbortCode.NOT_EXIST,
    ODR.NO_MAP: AbortCode.NO_MAP,
    ODR.MAP_LEN: AbortCode.MAP_LEN,
    ODR.PAR_INCOMPAT: AbortCode.PARAM_INCOMPAT,
    ODR.DEV_INCOMPAT: AbortCode.DEVICE_INCOMPAT,
    ODR.HW: AbortCode.HARDWARE,
    ODR.TYPE_MISMATCH: AbortCode.TYPE_MISMATCH,
    ODR.DATA_LONG: AbortCode.DATA_LONG,
    ODR.DATA_SHORT: AbortCode.DATA_SHORT,
    ODR.SUB_NOT_EXIST: AbortCode.SUB_UNKNOWN,
    ODR.INVALID_VALUE: AbortCode.INVALID_VALUE,
    ODR.VALUE_HIGH: AbortCode.VALUE_HIGH,
    ODR.VALUE_LOW: AbortCode.VALUE_LOW,
    ODR.MAX_LESS_MIN: AbortCode.MAX_LESS_MIN,
    ODR.NO_RESSOURCE: AbortCode.NO_RESSOURCE,
    ODR.GENERAL: AbortCode.GENERAL,
    ODR.DATA_TRANSF: AbortCode.DATA_TRANSFER,
    ODR.DATA_LOC_CTRL: AbortCode.DATA_LOCAL_CONTROL,
    ODR.DATA_DEV_STATE: AbortCode.DATA_DEVICE_STATE,
    ODR.OD_MISSING: AbortCode.DATA_OD,
    ODR.NO_DATA: AbortCode.NO_DATA,
}


def convert_od_to_sdo_abort(odr: ODR) -> AbortCode:
    """Map an object dictionary result to its SDO abort code (device incompatibility if unknown)."""
    return _OD_TO_ABORT.get(odr, AbortCode.DEVICE_INCOMPAT)


class SDOAbortError(Exception):
    """An SDO transfer was aborted with the given code."""

    def __init__(self, code: int) -> None:
        self.code = AbortCode(code)
        super().__init__(f"x{int(self.code):x} : {self.code.description()}")


class State(enum.IntEnum):
    """Internal states of the SDO state machines."""

    IDLE = 0x00
    ABORT = 0x01
    DOWNLOAD_LOCAL_TRANSFER = 0x10
    DOWNLOAD_INITIATE_REQ = 0x11
    DOWNLOAD_INITIATE_RSP = 0x12
    DOWNLOAD_SEGMENT_REQ = 0x13
    DOWNLOAD_SEGMENT_RSP = 0x14
    UPLOAD_LOCAL_TRANSFER = 0x20
    UPLOAD_INITIATE_REQ = 0x21
    UPLOAD_INITIATE_RSP = 0x22
    UPLOAD_EXPEDITED_RSP = 0x25
    UPLOAD_SEGMENT_REQ = 0x23
    UPLOAD_SEGMENT_RSP = 0x24
    DOWNLOAD_BLK_INITIATE_REQ = 0x51
    DOWNLOAD_BLK_INITIATE_RSP = 0x52
    DOWNLOAD_BLK_SUBBLOCK_REQ = 0x53
    DOWNLOAD_BLK_SUBBLOCK_RSP = 0x54
    DOWNLOAD_BLK_END_REQ = 0x55
    DOWNLOAD_BLK_END_RSP = 0x56
    UPLOAD_BLK_INITIATE_REQ = 0x61
    UPLOAD_BLK_INITIATE_RSP = 0x62
    UPLOAD_BLK_INITIATE_REQ2 = 0x63
    UPLOAD_BLK_SUBBLOCK_SREQ = 0x64
    UPLOAD_BLK_SUBBLOCK_CRSP = 0x65
    UPLOAD_BLK_END_SREQ = 0x66
    UPLOAD_BLK_END_CRSP = 0x67


_RESPONSE_CHECKS = {
    State.DOWNLOAD_INITIATE_RSP: lambda c: c == 0x60,
    State.DOWNLOAD_SEGMENT_RSP: lambda c: (c & 0xEF) == 0x20,
    State.DOWNLOAD_BLK_INITIATE_RSP: lambda c: (c & 0xFB) == 0xA0,
    State.DOWNLOAD_BLK_SUBBLOCK_REQ: lambda c: c == 0xA2,
    State.DOWNLOAD_BLK_SUBBLOCK_RSP: lambda c: c == 0xA2,
    State.DOWNLOAD_BLK_END_RSP: lambda c: c == 0xA1,
    State.UPLOAD_INITIATE_RSP: lambda c: (c & 0xF0) == 0x40,
    State.UPLOAD_SEGMENT_RSP: lambda c: (c & 0xE0) == 0x00,
    State.UPLOAD_BLK_INITIATE_RSP: lambda c: (c & 0xF9) == 0xC0 or (c & 0xF0) == 0x40,
    State.UPLOAD_BLK_SUBBLOCK_SREQ: lambda c: True,
    State.UPLOAD_BLK_END_SREQ: lambda c: (c & 0xE3) == 0xC1,
}


@dataclass(frozen=True)
class SDOMessage:
    """An 8 byte SDO frame payload with accessors for its fields."""

    raw: bytes = bytes(8)

    def __post_init__(self) -> None:
        raw = bytes(self.raw)
        if len(raw) != 8:
            raise ValueError("an SDO message is exactly 8 bytes long")
        object.__setattr__(self, "raw", raw)

    def is_response_command_valid(self, state: State) -> bool:
        """Whether the command byte is an expected answer in the given state."""
        check = _RESPONSE_CHECKS.get(state)
        return check is not None and check(self.raw[0])

    def is_abort(self) -> bool:
        return self.raw[0] == 0x80

    def abort_code(self) -> AbortCode:
        return AbortCode(struct.unpack_from("<I", self.raw, 4)[0])

    def index(self) -> int:
        return struct.unpack_from("<H", self.raw, 1)[0]

    def subindex(self) -> int:
        return self.raw[3]

    def toggle(self) -> int:
        return self.raw[0] & 0x10

    def block_size(self) -> int:
        return self.raw[4]

    def number_of_segments(self) -> int:
        return self.raw[1]

    def is_crc_enabled(self) -> bool:
        return (self.raw[0] & 0x04) != 0

    def crc_client(self) -> int:
        return struct.unpack_from("<H", self.raw, 1)[0]

    def is_expedited(self) -> bool:
        return self.raw[0] & MASK_TRANSFER_TYPE == TRANSFER_EXPEDITED

    def is_size_indicated(self) -> bool:
        return self.raw[0] & MASK_SIZE_INDICATED == SIZE_INDICATED

    def is_size_indicated_block(self) -> bool:
        return self.raw[0] & MASK_SIZE_INDICATED_BLOCK == SIZE_INDICATED_BLOCK

    def size_indicated(self) -> int:
        return struct.unpack_from("<I", self.raw, 4)[0]

    def seqno(self) -> int:
        return self.raw[0] & MASK_SEQNO

    def segment_remaining(self) -> bool:
        return self.raw[0] & MASK_SEGMENTS_REMAINING == SEGMENT_REMAINING


def is_id_restricted(can_id: int) -> bool:
    """Whether a CAN identifier is reserved and may not be configured for a service."""
    return (
        can_id <= 0x7F
        or 0x101 <= can_id <= 0x180
        or 0x581 <= can_id <= 0x5FF
        or 0x601 <= can_id <= 0x67F
        or 0x6E0 <= can_id <= 0x6FF
        or 0x701 <= can_id <= 0x7FF
    )


@dataclass
class Stream:
    """Access context of one object dictionary variable handed to extension callbacks."""

    object: Any
    subindex: int
    data: bytearray = field(default_factory=bytearray)
    data_offset: int = 0


def write_entry_default(stream: Stream, data: bytes) -> int:
    """Store data in the stream's variable at its offset and return the count written."""
    end = stream.data_offset + len(data)
    if end > len(stream.data):
        raise ODError(ODR.DATA_LONG)
    stream.data[stream.data_offset:end] = data
    return len(data)


def read_entry_default(stream: Stream, buffer: bytearray) -> int:
    """Copy the stream's variable from its offset into buffer and return the count read."""
    chunk = stream.data[stream.data_offset:stream.data_offset + len(buffer)]
    buffer[: len(chunk)] = chunk
    return len(chunk)