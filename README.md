# canservices

`canservices` provides communication objects of a CANopen node as plain
Python classes. Each one keeps its own state machine, reacts to received
frames through `handle(frame)` and builds the frames it has to send.

## Contents

- `canservices.sdo_common`: the `Frame` type, object dictionary result codes
  (`ODR`, `ODError`), SDO abort codes (`AbortCode` with `description()`,
  `SDOAbortError`), `convert_od_to_sdo_abort`, the SDO protocol `State`
  values and the `SDOMessage` decoder for 8 byte SDO payloads. It also holds
  the `Stream` access context, `write_entry_default` / `read_entry_default`,
  `is_id_restricted`, and the errors `IllegalArgumentError` and
  `ODParametersError` raised when a service cannot be set up.
- `canservices.time_service`: `TimeService`, the TIME stamp producer and
  consumer, and its COB-ID write hook `write_entry_1012`.
- `canservices.sync_service`: `SyncService` and `SyncEvent`, the SYNC
  producer and consumer, and the write hooks `write_entry_1005`,
  `write_entry_1006`, `write_entry_1007` and `write_entry_1019`.
- `canservices.pdo_common`: `PDOCommon`, the mapping state shared by receive
  and transmit PDOs, with the dummy accessors `read_dummy` and `write_dummy`.
- `canservices.rpdo`: `RPDO`, the receive PDO.
- `canservices.tpdo`: `TPDO`, the transmit PDO.
- `canservices.pdo_extensions`: the hooks for PDO communication and mapping
  parameters (`write_entry_14xx`, `write_entry_18xx`,
  `read_entry_14xx_or_18xx`, `write_entry_16xx_or_1axx`).
- `canservices.sdo_extensions`: `write_entry_1201`, which validates and
  applies changes to SDO server parameters on a server object that offers
  `init_rx_tx(...)`.

## Installation

```
pip install .
```

With the test extra:

```
pip install ".[test]"
pytest
```

## What you provide

The services work against objects you supply:

- a bus offering `subscribe(ident, mask, rtr, handler)` and `send(frame)`;
- object dictionary entries offering `uint8(subindex)`, `uint16(subindex)`,
  `uint32(subindex)`, `index`, `name` and `add_extension(obj, read, write)`;
  write hooks are called as `hook(stream, data)` and read hooks as
  `hook(stream, buffer)`, each returning the number of bytes handled;
- for PDOs, an object dictionary offering `index(index)` and
  `streamer(index, subindex, origin)`;
- an emergency object offering `error(...)`, `error_report(...)` and
  `error_reset(...)`.

Failed dictionary accesses are signalled by raising `ODError` with an `ODR`
code.

## Usage

Frames that arrive for a service go to its `handle(frame)` method. The
application calls `process(...)` periodically and passes in the time that has
passed, in microseconds.

```python
from canservices.time_service import TimeService


class Bus:
    def __init__(self):
        self.sent = []

    def subscribe(self, ident, mask, rtr, handler):
        pass

    def send(self, frame):
        self.sent.append(frame)


class Entry:
    index = 0x1012

    def __init__(self, value):
        self.value = value

    def uint32(self, subindex):
        return self.value

    def add_extension(self, obj, read, write):
        self.extension = (obj, read, write)


bus = Bus()
# COB-ID 0x100 with the producer bit set
time_service = TimeService(bus, Entry(0x40000100), producer_interval_ms=1000)

received = time_service.process(True, 10_000)
print(received, bus.sent[0].id, bus.sent[0].dlc)  # False 256 6
print(time_service.internal_time())
```

`SyncService.process(...)` returns a `SyncEvent`; `RPDO.process(...)` and
`TPDO.process(...)` take the elapsed time, whether the node is operational,
and whether a SYNC occurred in this cycle. `TPDO.send()` transmits the mapped
values at once.

## What is not included

This package does not contain an SDO server or SDO client: the expedited,
segmented and block transfer state machines are not implemented, only the
protocol definitions in `sdo_common` and the parameter hook in
`sdo_extensions`. It has no object dictionary, no CAN bus driver and no NMT
or emergency service; these are supplied by the application as described
above.