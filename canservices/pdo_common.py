"""State and mapping logic shared by receive and transmit PDOs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from canservices.sdo_common import ODError, ODParametersError, ODR, Stream

MAX_PDO_LENGTH = 8
BUFFER_COUNT_RPDO = 2
MIN_PDO_NUMBER = 1
MAX_PDO_NUMBER = 512
MIN_RPDO_NUMBER = MIN_PDO_NUMBER
MAX_RPDO_NUMBER = 256
MIN_TPDO_NUMBER = MAX_RPDO_NUMBER + 1
MAX_TPDO_NUMBER = MAX_PDO_NUMBER

TRANSMISSION_TYPE_SYNC_ACYCLIC = 0
TRANSMISSION_TYPE_SYNC_1 = 1
TRANSMISSION_TYPE_SYNC_240 = 0xF0
TRANSMISSION_TYPE_SYNC_EVENT_LO = 0xFE
TRANSMISSION_TYPE_SYNC_EVENT_HI = 0xFF

MAX_MAPPED_ENTRIES_PDO = 8
FLAGS_PDO_SIZE = 32

ATTRIBUTE_TPDO = 0x04
ATTRIBUTE_RPDO = 0x08

Reader = Callable[[Any, bytearray], int]
Writer = Callable[[Any, bytes], int]


def write_dummy(stream: Any, data: bytes) -> int:
    """Pretend to write a variable: accept every byte."""
    return len(data)


def read_dummy(stream: Any, data: bytearray) -> int:
    """Pretend to read a variable: report as many bytes as both sides hold."""
    if data is None or stream is None:
        raise ODError(ODR.DEV_INCOMPAT)
    return min(len(data), len(stream.data))


@dataclass
class MappedObject:
    """One object mapped into a PDO, with the number of bytes it occupies there."""

    stream: Any = field(default_factory=lambda: Stream(None, 0))
    reader: Reader | None = None
    writer: Writer | None = None
    data_length: int = 0
    mapped_length: int = 0

    def reset_data(self, size: int, mapped_length: int) -> None:
        """Map to a scratch variable of the given size."""
        self.stream = Stream(None, 0, bytearray(size))
        self.data_length = size
        self.mapped_length = mapped_length

    def read(self, buffer: bytearray) -> int:
        """Read the variable from its start into buffer."""
        if self.reader is None:
            raise ODError(ODR.DEV_INCOMPAT)
        self.stream.data_offset = 0
        return self.reader(self.stream, buffer)

    def write(self, data: bytes) -> int:
        """Write data to the variable from its start."""
        if self.writer is None:
            raise ODError(ODR.DEV_INCOMPAT)
        self.stream.data_offset = 0
        return self.writer(self.stream, data)


@dataclass
class PDOFlag:
    """A bit in an entry's PDO flags that tells whether a mapped value was sent."""

    buffer: bytearray
    position: int
    bitmask: int

    def is_set(self) -> bool:
        return (self.buffer[self.position] & self.bitmask) != 0

    def set(self) -> None:
        self.buffer[self.position] |= self.bitmask


class PDOCommon:
    """Mapping and validity state common to RPDOs and TPDOs.

    The object dictionary must offer ``index(index)`` returning an entry (with an
    ``extension`` attribute, ``None`` or holding a ``flags_pdo`` bytearray) and
    ``streamer(index, subindex, origin)`` returning an object with ``stream``,
    ``reader``, ``writer``, ``data_length`` and ``has_attribute(attr)``.
    The mapping entry must offer ``uint8(subindex)``, ``uint32(subindex)`` and ``index``.
    If a mapping is wrong the object is still built; ``erroneous_map`` then holds
    the first failed mapping parameter, or 1 for a length error.
    """

    def __init__(self, odict: Any, entry: Any, is_rpdo: bool, emcy: Any = None, logger: logging.Logger | None = None):
        self.odict = odict
        self.emcy = emcy
        self.is_rpdo = is_rpdo
        self.logger = logger or logging.getLogger(__name__)
        self.mapped = [MappedObject() for _ in range(MAX_MAPPED_ENTRIES_PDO)]
        self.flags: list[PDOFlag | None] = [None] * MAX_MAPPED_ENTRIES_PDO
        self.valid = False
        self.data_length = 0
        self.nb_mapped = 0
        self.predefined_id = 0
        self.configured_id = 0
        self.erroneous_map = 0

        try:
            count = entry.uint8(0)
        except ODError as err:
            self.logger.error("%s reading nb mapped objects failed: index x%x subindex x0: %s",
                              self.type_name(), entry.index, err)
            raise ODParametersError("cannot read number of mapped objects") from err

        total = 0
        for i, mapped in enumerate(self.mapped):
            try:
                map_param = entry.uint32(i + 1)
            except ODError as err:
                if err.odr == ODR.SUB_NOT_EXIST:
                    continue
                self.logger.error("%s reading mapped objects failed: index x%x subindex x%x: %s",
                                  self.type_name(), entry.index, i + 1, err)
                raise ODParametersError("cannot read mapping parameter") from err
            try:
                self.configure_map(map_param, i)
            except ODError:
                mapped.reset_data(0, 0xFF)
                if self.erroneous_map == 0:
                    self.erroneous_map = map_param
            if i < count:
                total += mapped.mapped_length

        if total > MAX_PDO_LENGTH or (total == 0 and count > 0):
            if self.erroneous_map == 0:
                self.erroneous_map = 1
        if self.erroneous_map == 0:
            self.data_length = total
            self.nb_mapped = count

    def attribute(self) -> int:
        """The object attribute a variable needs to be mapped into this PDO."""
        return ATTRIBUTE_RPDO if self.is_rpdo else ATTRIBUTE_TPDO

    def type_name(self) -> str:
        return "RPDO" if self.is_rpdo else "TPDO"

    def configure_map(self, map_param: int, map_index: int) -> None:
        """Map the variable described by a mapping parameter at the given position."""
        index = (map_param >> 16) & 0xFFFF
        subindex = (map_param >> 8) & 0xFF
        length_bits = map_param & 0xFF
        length = length_bits >> 3
        mapped = self.mapped[map_index]

        if length > MAX_PDO_LENGTH:
            self.logger.warning("%s mapped parameter is too long: index x%x subindex x%x length %d",
                                self.type_name(), index, subindex, length)
            raise ODError(ODR.MAP_LEN)

        if index < 0x20 and subindex == 0:
            mapped.reset_data(length, length)
            mapped.reader = read_dummy
            mapped.writer = write_dummy
            return

        entry = self.odict.index(index)
        try:
            source = self.odict.streamer(index, subindex, False)
        except ODError as err:
            self.logger.warning("%s mapping failed: index x%x subindex x%x: %s",
                                self.type_name(), index, subindex, err)
            raise

        if not source.has_attribute(self.attribute()):
            reason = "attribute"
        elif length_bits & 0x07:
            reason = "alignment"
        elif source.data_length < length:
            reason = "length"
        else:
            reason = None
        if reason is not None:
            self.logger.warning("%s mapping failed: %s error: index x%x subindex x%x",
                                self.type_name(), reason, index, subindex)
            raise ODError(ODR.NO_MAP)

        mapped.stream = source.stream
        mapped.reader = source.reader
        mapped.writer = source.writer
        mapped.data_length = source.data_length
        mapped.mapped_length = length

        if self.is_rpdo:
            return
        extension = getattr(entry, "extension", None) if entry is not None else None
        if subindex < FLAGS_PDO_SIZE * 8 and extension is not None:
            self.flags[map_index] = PDOFlag(extension.flags_pdo, subindex >> 3, 1 << (subindex & 0x07))
        else:
            self.flags[map_index] = None
        self.logger.info("%s update mapping successful: index x%x subindex x%x",
                         self.type_name(), index, subindex)