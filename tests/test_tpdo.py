from types import SimpleNamespace

import pytest

from canservices.pdo_common import ATTRIBUTE_TPDO, TRANSMISSION_TYPE_SYNC_EVENT_LO
from canservices.rpdo import EM_PDO_WRONG_MAPPING, ERR_PROTOCOL_ERROR
from canservices.sdo_common import (
    IllegalArgumentError,
    ODError,
    ODParametersError,
    ODR,
    Stream,
    read_entry_default,
    write_entry_default,
)
from canservices.tpdo import TPDO


class FakeEntry:
    def __init__(self, index, values, with_flags=False):
        self.index = index
        self.name = f"entry x{index:x}"
        self.values = dict(values)
        self.extension = SimpleNamespace(flags_pdo=bytearray(32)) if with_flags else None
        self.hooks = None

    def _get(self, subindex):
        if subindex not in self.values:
            raise ODError(ODR.SUB_NOT_EXIST)
        return self.values[subindex]

    def uint8(self, subindex):
        return self._get(subindex)

    def uint16(self, subindex):
        return self._get(subindex)

    def uint32(self, subindex):
        return self._get(subindex)

    def add_extension(self, obj, read, write):
        self.hooks = (obj, read, write)


class FakeOD:
    def __init__(self):
        self.variable = bytearray(b"\x01\x02")
        self.var_entry = FakeEntry(0x2000, {}, with_flags=True)

    def index(self, index):
        return self.var_entry if index == 0x2000 else None

    def streamer(self, index, subindex, origin):
        if index != 0x2000 or subindex != 0:
            raise ODError(ODR.IDX_NOT_EXIST)
        return SimpleNamespace(
            stream=Stream(None, subindex, self.variable),
            reader=read_entry_default,
            writer=write_entry_default,
            data_length=len(self.variable),
            has_attribute=lambda attr: bool(ATTRIBUTE_TPDO & attr),
        )


class FakeBus:
    def __init__(self):
        self.sent = []

    def send(self, frame):
        self.sent.append(frame)


class FakeEmcy:
    def __init__(self):
        self.reports = []

    def error_report(self, bit, code, info):
        self.reports.append((bit, code, info))


class FakeSync:
    def __init__(self, overflow=0, counter=0):
        self.overflow = overflow
        self.count = counter

    def counter_overflow(self):
        return self.overflow

    def counter(self):
        return self.count


def make_tpdo(cob_id=0x180, transmission_type=0xFE, mapping=(0x20000010,), inhibit=0,
              event=0, sync_start=0, sync=None, predefined=0x181, comm_values=None):
    od = FakeOD()
    values = {1: cob_id, 2: transmission_type, 3: inhibit, 5: event, 6: sync_start}
    if comm_values is not None:
        values = comm_values
    entry18 = FakeEntry(0x1800, values)
    mapping_values = {0: len(mapping)}
    mapping_values.update({i + 1: m for i, m in enumerate(mapping)})
    entry1a = FakeEntry(0x1A00, mapping_values)
    bus = FakeBus()
    emcy = FakeEmcy()
    tpdo = TPDO(bus, od, emcy, sync, entry18, entry1a, predefined)
    return tpdo, bus, emcy, od, entry18


def test_repeated_send_succeeds():
    tpdo, bus, _, _, _ = make_tpdo()
    for _ in range(100):
        tpdo.send()
    assert len(bus.sent) == 100
    assert all(frame.data[:2] == b"\x01\x02" for frame in bus.sent)


def test_default_id_gets_node_id():
    tpdo, _, emcy, _, _ = make_tpdo()
    assert tpdo.tx_frame.id == 0x181
    assert tpdo.tx_frame.dlc == 2
    assert tpdo.pdo.valid
    assert emcy.reports == []


def test_other_id_is_kept():
    tpdo, _, _, _, _ = make_tpdo(cob_id=0x200)
    assert tpdo.tx_frame.id == 0x200


def test_send_carries_mapped_value():
    tpdo, bus, _, od, _ = make_tpdo()
    od.variable[:] = b"\xAA\xBB"
    tpdo.send()
    assert bus.sent[-1].id == 0x181
    assert bus.sent[-1].data[:2] == b"\xAA\xBB"


def test_invalid_cob_id_disables_pdo():
    tpdo, bus, emcy, _, _ = make_tpdo(cob_id=0x80000180)
    assert not tpdo.pdo.valid
    assert emcy.reports == []
    tpdo.process(1000, True, False)
    assert bus.sent == []


def test_empty_mapping_reports_emergency():
    tpdo, _, emcy, _, _ = make_tpdo(mapping=())
    assert not tpdo.pdo.valid
    assert emcy.reports == [(EM_PDO_WRONG_MAPPING, ERR_PROTOCOL_ERROR, 0x180)]


def test_reserved_transmission_type_becomes_event_driven():
    tpdo, _, _, _, _ = make_tpdo(transmission_type=0xF5)
    assert tpdo.transmission_type == TRANSMISSION_TYPE_SYNC_EVENT_LO


def test_event_driven_sends_on_flag_clear():
    tpdo, bus, _, od, _ = make_tpdo()
    tpdo.process(1000, True, False)
    assert len(bus.sent) == 1
    assert od.var_entry.extension.flags_pdo[0] & 1 == 1
    tpdo.process(1000, True, False)
    assert len(bus.sent) == 1
    od.var_entry.extension.flags_pdo[0] = 0
    tpdo.process(1000, True, False)
    assert len(bus.sent) == 2


def test_event_timer_triggers_send():
    tpdo, bus, _, _, _ = make_tpdo(event=10)
    assert tpdo.event_time_us == 10000
    tpdo.process(0, True, False)
    assert len(bus.sent) == 1
    tpdo.process(5000, True, False)
    assert len(bus.sent) == 1
    tpdo.process(5000, True, False)
    assert len(bus.sent) == 2


def test_inhibit_time_delays_send():
    tpdo, bus, _, od, _ = make_tpdo(inhibit=50)
    assert tpdo.inhibit_time_us == 5000
    tpdo.process(0, True, False)
    assert len(bus.sent) == 1
    od.var_entry.extension.flags_pdo[0] = 0
    tpdo.process(1000, True, False)
    assert len(bus.sent) == 1
    tpdo.process(4000, True, False)
    assert len(bus.sent) == 2


def test_not_operational_does_not_send_and_requests():
    tpdo, bus, _, _, _ = make_tpdo()
    tpdo.send()
    tpdo.process(1000, False, False)
    assert len(bus.sent) == 1
    assert tpdo.send_request
    assert tpdo.sync_counter == 255


def test_cyclic_sends_every_sync():
    tpdo, bus, _, _, _ = make_tpdo(transmission_type=1, sync=FakeSync())
    tpdo.process(1000, True, False)
    assert bus.sent == []
    for _ in range(3):
        tpdo.process(1000, True, True)
    assert len(bus.sent) == 3


def test_sync_start_value_waits_for_counter():
    sync = FakeSync(overflow=10, counter=1)
    tpdo, bus, _, _, _ = make_tpdo(transmission_type=1, sync_start=3, sync=sync)
    tpdo.process(1000, True, True)
    assert bus.sent == []
    assert tpdo.sync_counter == 254
    sync.count = 3
    tpdo.process(1000, True, True)
    assert len(bus.sent) == 1
    tpdo.process(1000, True, True)
    assert len(bus.sent) == 2


def test_missing_cob_id_raises():
    with pytest.raises(ODParametersError):
        make_tpdo(comm_values={2: 0xFE})


def test_missing_transmission_type_raises():
    with pytest.raises(ODParametersError):
        make_tpdo(comm_values={1: 0x180})


def test_optional_parameters_default_to_zero():
    tpdo, _, _, _, _ = make_tpdo(comm_values={1: 0x180, 2: 0xFE})
    assert (tpdo.inhibit_time_us, tpdo.event_time_us, tpdo.sync_start_value) == (0, 0, 0)


def test_missing_arguments_raise():
    with pytest.raises(IllegalArgumentError):
        TPDO(FakeBus(), FakeOD(), None, None, FakeEntry(0x1800, {}), FakeEntry(0x1A00, {}), 0)


def test_extension_rejects_reserved_transmission_type():
    tpdo, _, _, _, entry18 = make_tpdo()
    obj, _, write = entry18.hooks
    assert obj is tpdo
    with pytest.raises(ODError) as excinfo:
        write(Stream(tpdo, 2, bytearray(1)), b"\xF5")
    assert excinfo.value.odr == ODR.INVALID_VALUE