import struct
from dataclasses import dataclass

import pytest

from canservices.pdo_common import ATTRIBUTE_RPDO
from canservices.pdo_extensions import read_entry_14xx_or_18xx, write_entry_14xx
from canservices.rpdo import (
    EM_PDO_WRONG_MAPPING,
    EM_RPDO_TIME_OUT,
    EM_RPDO_WRONG_LENGTH,
    ERR_PDO_LENGTH,
    ERR_PDO_LENGTH_EXC,
    ERR_PROTOCOL_ERROR,
    ERR_RPDO_TIMEOUT,
    RPDO,
)
from canservices.sdo_common import (
    Frame,
    IllegalArgumentError,
    ODError,
    ODParametersError,
    ODR,
    Stream,
    read_entry_default,
    write_entry_default,
)


class FakeEntry:
    def __init__(self, index, values):
        self.index = index
        self.values = dict(values)
        self.extension = None
        self.extensions = []

    def _get(self, subindex):
        if subindex not in self.values:
            raise ODError(ODR.SUB_NOT_EXIST)
        return self.values[subindex]

    uint8 = uint16 = uint32 = _get

    def add_extension(self, obj, read, write):
        self.extensions.append((obj, read, write))


@dataclass
class FakeStreamer:
    stream: Stream
    reader: object
    writer: object
    data_length: int

    def has_attribute(self, attribute):
        return bool(ATTRIBUTE_RPDO & attribute)


class FakeOD:
    def __init__(self):
        self.variable = Stream(None, 0, bytearray(2))

    def index(self, index):
        return FakeEntry(index, {})

    def streamer(self, index, subindex, origin):
        if (index, subindex) != (0x2000, 0):
            raise ODError(ODR.IDX_NOT_EXIST)
        return FakeStreamer(self.variable, read_entry_default, write_entry_default, 2)


class FakeBus:
    def __init__(self):
        self.subscriptions = []

    def subscribe(self, ident, mask, rtr, handler):
        self.subscriptions.append((ident, handler))


class FakeEmcy:
    def __init__(self):
        self.calls = []

    def error(self, *args):
        self.calls.append(("error",) + args)

    def error_report(self, *args):
        self.calls.append(("report",) + args)

    def error_reset(self, *args):
        self.calls.append(("reset",) + args)


class FakeSync:
    def __init__(self):
        self.toggle = False

    def rx_toggle(self):
        return self.toggle


def make(cob_id=0x201, transmission_type=0xFF, event_ms=0, count=1, mapping=0x20000010, sync=None):
    od = FakeOD()
    bus = FakeBus()
    emcy = FakeEmcy()
    comm = FakeEntry(0x1400, {1: cob_id, 2: transmission_type, 5: event_ms})
    mapping_entry = FakeEntry(0x1600, {0: count, 1: mapping})
    rpdo = RPDO(bus, od, emcy, sync, comm, mapping_entry, 0x201)
    return rpdo, od, bus, emcy, comm, mapping_entry


def test_initialisation():
    rpdo, _, bus, emcy, comm, mapping = make()
    assert rpdo.pdo.valid is True
    assert rpdo.pdo.configured_id == 0x201
    assert bus.subscriptions == [(0x201, rpdo)]
    assert emcy.calls == []
    assert comm.extensions == [(rpdo, read_entry_14xx_or_18xx, write_entry_14xx)]
    assert mapping.extensions[0][0] is rpdo


def test_missing_arguments():
    with pytest.raises(IllegalArgumentError):
        RPDO(FakeBus(), FakeOD(), None, None, FakeEntry(0x1400, {}), FakeEntry(0x1600, {}), 0x201)


def test_missing_transmission_type():
    od = FakeOD()
    comm = FakeEntry(0x1400, {1: 0x201})
    mapping = FakeEntry(0x1600, {0: 1, 1: 0x20000010})
    with pytest.raises(ODParametersError):
        RPDO(FakeBus(), od, FakeEmcy(), None, comm, mapping, 0x201)


def test_default_id_gets_node_id():
    rpdo, _, bus, _, _, _ = make(cob_id=0x200)
    assert rpdo.pdo.configured_id == 0x201
    assert bus.subscriptions[-1][0] == 0x201


def test_no_mapping_reports_error():
    rpdo, _, bus, emcy, _, _ = make(count=0)
    assert rpdo.pdo.valid is False
    assert bus.subscriptions[-1][0] == 0
    assert emcy.calls == [("report", EM_PDO_WRONG_MAPPING, ERR_PROTOCOL_ERROR, 0x201)]


def test_wrong_mapping_reports_parameter():
    rpdo, _, _, emcy, _, _ = make(mapping=0x30000010)
    assert rpdo.pdo.valid is False
    assert emcy.calls == [("report", EM_PDO_WRONG_MAPPING, ERR_PROTOCOL_ERROR, 0x30000010)]


def test_reception_writes_variable():
    rpdo, od, _, emcy, _, _ = make()
    rpdo.handle(Frame(0x201, 0, 2, b"\x34\x12"))
    rpdo.process(1000, True, False)
    assert bytes(od.variable.data) == b"\x34\x12"
    assert rpdo.rx_new == [False, False]
    assert emcy.calls == []


def test_not_operational_drops_frame():
    rpdo, od, _, _, _, _ = make()
    rpdo.handle(Frame(0x201, 0, 2, b"\x34\x12"))
    rpdo.process(1000, False, False)
    assert rpdo.rx_new == [False, False]
    rpdo.process(1000, True, False)
    assert bytes(od.variable.data) == bytes(2)


def test_invalid_pdo_ignores_frames():
    rpdo, od, _, _, _, _ = make(count=0)
    rpdo.handle(Frame(0x201, 0, 2, b"\x34\x12"))
    assert rpdo.rx_new == [False, False]


def test_short_frame_reports_length_error():
    rpdo, od, _, emcy, _, _ = make()
    rpdo.handle(Frame(0x201, 0, 1, b"\x34"))
    rpdo.process(1000, True, False)
    assert emcy.calls == [("error", True, EM_RPDO_WRONG_LENGTH, ERR_PDO_LENGTH, 2)]
    assert bytes(od.variable.data) == bytes(2)


def test_long_frame_then_correct_frame():
    rpdo, od, _, emcy, _, _ = make()
    rpdo.handle(Frame(0x201, 0, 3, b"\x01\x02\x03"))
    rpdo.process(1000, True, False)
    assert emcy.calls == [("error", True, EM_RPDO_WRONG_LENGTH, ERR_PDO_LENGTH_EXC, 2)]
    assert bytes(od.variable.data) == b"\x01\x02"
    rpdo.handle(Frame(0x201, 0, 2, b"\x05\x06"))
    rpdo.process(1000, True, False)
    assert emcy.calls[-1] == ("error", False, EM_RPDO_WRONG_LENGTH, ERR_PDO_LENGTH_EXC, 2)
    assert bytes(od.variable.data) == b"\x05\x06"


def test_timeout_reported_and_reset():
    rpdo, _, _, emcy, _, _ = make(event_ms=10)
    assert rpdo.timeout_time_us == 10 * 1000
    rpdo.process(5000, True, False)
    assert emcy.calls == []
    rpdo.handle(Frame(0x201, 0, 2, b"\x01\x02"))
    rpdo.process(5000, True, False)
    assert rpdo.timeout_timer == 1
    rpdo.process(20000, True, False)
    assert emcy.calls == [("report", EM_RPDO_TIME_OUT, ERR_RPDO_TIMEOUT, 20001)]
    rpdo.handle(Frame(0x201, 0, 2, b"\x01\x02"))
    rpdo.process(5000, True, False)
    assert emcy.calls[-1] == ("reset", EM_RPDO_TIME_OUT, 20001)
    assert rpdo.timeout_timer == 1


def test_synchronous_waits_for_sync():
    sync = FakeSync()
    rpdo, od, _, _, _, _ = make(transmission_type=1, sync=sync)
    assert rpdo.synchronous is True
    sync.toggle = True
    rpdo.handle(Frame(0x201, 0, 2, b"\x0a\x0b"))
    assert rpdo.rx_new == [False, True]
    rpdo.process(1000, True, False)
    assert bytes(od.variable.data) == bytes(2)
    rpdo.process(1000, True, True)
    assert bytes(od.variable.data) == bytes(2)
    sync.toggle = False
    rpdo.process(1000, True, True)
    assert bytes(od.variable.data) == b"\x0a\x0b"


def test_cob_id_write_through_extension_disables_reception():
    rpdo, od, bus, _, _, _ = make()
    stream = Stream(rpdo, 1, bytearray(struct.pack("<I", 0x201)))
    write_entry_14xx(stream, struct.pack("<I", 0x80000201))
    rpdo.handle(Frame(0x201, 0, 2, b"\x01\x02"))
    rpdo.process(1000, True, False)
    assert bytes(od.variable.data) == bytes(2)
    assert bus.subscriptions[-1][0] == 0