"""CANopen SYNC producer and consumer."""

from __future__ import annotations

import enum
import logging
import struct
import threading
from typing import Any

from canservices.sdo_common import (
    Frame,
    IllegalArgumentError,
    ODError,
    ODParametersError,
    ODR,
    is_id_restricted,
    read_entry_default,
    write_entry_default,
)

# Emergency error status bits and error codes used by the SYNC service
EM_SYNC_TIME_OUT = 0x18
EM_SYNC_LENGTH = 0x1D
ERR_COMMUNICATION = 0x8100
ERR_SYNC_DATA_LENGTH = 0x8240

_UINT32_MAX = 0xFFFFFFFF


class SyncEvent(enum.IntEnum):
    """What happened to SYNC during the last processing cycle."""

    NONE = 0
    RX_OR_TX = 1
    PASSED_WINDOW = 2


def _read_u32(entry: Any, logger: logging.Logger, what: str) -> int:
    try:
        return entry.uint32(0)
    except ODError as err:
        logger.warning("failed to read %s: %s", what, err)
        return 0


class SyncService:
    """Produces or consumes SYNC messages and tracks SYNC timing.

    The bus must offer ``subscribe(ident, mask, rtr, handler)`` and ``send(frame)``.
    Entries must offer ``uint32(subindex)`` / ``uint8(subindex)``, ``index``, ``name``
    and ``add_extension(obj, read, write)``. The emergency object, if any, must offer
    ``error(set_error, error_bit, error_code, info)``.
    """

    def __init__(
        self,
        bus: Any,
        emergency: Any,
        entry1005: Any,
        entry1006: Any,
        entry1007: Any,
        entry1019: Any = None,
        logger: logging.Logger | None = None,
    ):
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._bus = bus
        self._rx_new = False
        self._receive_error = 0
        self._rx_toggle = False
        self._timeout_error = 0
        self._counter = 0
        self._sync_is_outside_window = False
        self._timer = 0

        if entry1005 is None:
            raise IllegalArgumentError("entry 0x1005 is required")
        try:
            cob_id_sync = entry1005.uint32(0)
        except ODError as err:
            self._logger.error("error reading COB-ID: index x%x name %s", entry1005.index, entry1005.name)
            raise ODParametersError("cannot read SYNC COB-ID") from err
        entry1005.add_extension(self, read_entry_default, write_entry_1005)

        if entry1006 is None:
            self._logger.error("not found: x1006 COMM CYCLE PERIOD")
            raise ODParametersError("entry 0x1006 is missing")
        if entry1007 is None:
            self._logger.error("not found: x1007 SYNCHRONOUS WINDOW LENGTH")
            raise ODParametersError("entry 0x1007 is missing")

        entry1006.add_extension(self, read_entry_default, write_entry_1006)
        try:
            comm_cycle_period = entry1006.uint32(0)
        except ODError as err:
            self._logger.error("read error x1006 %s: %s", entry1006.name, err)
            raise ODParametersError("cannot read communication cycle period") from err
        self._comm_cycle_period = entry1006
        self._logger.info("communication cycle period %d", comm_cycle_period)

        entry1007.add_extension(self, read_entry_default, write_entry_1007)
        try:
            window_length = entry1007.uint32(0)
        except ODError as err:
            self._logger.error("read error x1007 %s: %s", entry1007.name, err)
            raise ODParametersError("cannot read synchronous window length") from err
        self._sync_window_length = entry1007
        self._logger.info("sync window length %d", window_length)

        overflow = 0
        if entry1019 is not None:
            try:
                overflow = entry1019.uint8(0)
            except ODError as err:
                self._logger.error("read error x1019 %s", entry1019.name)
                raise ODParametersError("cannot read synchronous counter overflow") from err
            if overflow == 1:
                overflow = 2
            elif overflow > 240:
                overflow = 240
            entry1019.add_extension(self, read_entry_default, write_entry_1019)
            self._logger.info("sync counter overflow %d", overflow)

        self._counter_overflow = overflow
        self._emcy = emergency
        self._is_producer = (cob_id_sync & 0x40000000) != 0
        self._cob_id = cob_id_sync & 0x7FF
        bus.subscribe(self._cob_id, 0x7FF, False, self)
        self._tx_frame = Frame(self._cob_id, 0, 1 if overflow else 0)
        self._logger.info("initialization finished")

    @property
    def cob_id(self) -> int:
        return self._cob_id

    @property
    def is_producer(self) -> bool:
        return self._is_producer

    def _emergency(self, set_error: bool, bit: int, code: int, info: int) -> None:
        if self._emcy is not None:
            self._emcy.error(set_error, bit, code, info)

    def handle(self, frame: Frame) -> None:
        """Take in a received SYNC frame."""
        with self._lock:
            received = False
            if self._counter_overflow == 0:
                if frame.dlc == 0:
                    received = True
                else:
                    self._receive_error = frame.dlc | 0x40
            elif frame.dlc == 1:
                self._counter = frame.data[0]
                received = True
            else:
                self._receive_error = frame.dlc | 0x80
            if received:
                self._rx_toggle = not self._rx_toggle
                self._rx_new = True

    def process(self, nmt_is_pre_or_operational: bool, time_difference_us: int) -> SyncEvent:
        """Run one cycle of the SYNC state machine and report the resulting event."""
        self._lock.acquire()
        try:
            status = SyncEvent.NONE
            if not nmt_is_pre_or_operational:
                self._rx_new = False
                self._receive_error = 0
                self._counter = 0
                self._timer = 0
                return SyncEvent.NONE

            timer_new = (self._timer + time_difference_us) & _UINT32_MAX
            if timer_new > self._timer:
                self._timer = timer_new
            if self._rx_new:
                self._timer = 0
                self._rx_new = False
                status = SyncEvent.RX_OR_TX

            period = _read_u32(self._comm_cycle_period, self._logger, "comm cycle period")
            if period > 0:
                if self._is_producer:
                    if self._timer >= period:
                        status = SyncEvent.RX_OR_TX
                        self._lock.release()
                        try:
                            self._send()
                        finally:
                            self._lock.acquire()
                elif self._timeout_error == 1:
                    period_timeout = period + (period >> 1)
                    if period_timeout > _UINT32_MAX:
                        period_timeout = _UINT32_MAX
                    if self._timer > period_timeout:
                        self._emergency(True, EM_SYNC_TIME_OUT, ERR_COMMUNICATION, self._timer)
                        self._logger.warning("timeout error: timer %d period %d", self._timer, period_timeout)
                        self._timeout_error = 2

            window = _read_u32(self._sync_window_length, self._logger, "sync window length")
            if window > 0 and self._timer > window:
                if not self._sync_is_outside_window:
                    status = SyncEvent.PASSED_WINDOW
                self._sync_is_outside_window = True
            else:
                self._sync_is_outside_window = False

            if self._receive_error != 0:
                self._emergency(True, EM_SYNC_LENGTH, ERR_SYNC_DATA_LENGTH, self._timer)
                self._logger.warning("reception error %d at timer %d", self._receive_error, self._timer)
                self._receive_error = 0
            if status == SyncEvent.RX_OR_TX:
                if self._timeout_error == 2:
                    self._emergency(False, EM_SYNC_TIME_OUT, 0, 0)
                    self._logger.warning("reset error")
                self._timeout_error = 1
            return status
        finally:
            self._lock.release()

    def _send(self) -> None:
        with self._lock:
            self._counter = (self._counter + 1) & 0xFF
            if self._counter > self._counter_overflow:
                self._counter = 1
            self._timer = 0
            self._rx_toggle = not self._rx_toggle
            self._tx_frame.data[0] = self._counter
            frame = Frame(self._tx_frame.id, self._tx_frame.flags, self._tx_frame.dlc, bytearray(self._tx_frame.data))
        # Sent without holding the lock: own messages may come back through handle()
        self._bus.send(frame)

    def counter(self) -> int:
        with self._lock:
            return self._counter

    def rx_toggle(self) -> bool:
        with self._lock:
            return self._rx_toggle

    def counter_overflow(self) -> int:
        with self._lock:
            return self._counter_overflow


def _service_of(stream: Any, data: Any, length: int, check_subindex: bool = True) -> SyncService:
    if stream is None or data is None or len(data) != length or (check_subindex and stream.subindex != 0):
        raise ODError(ODR.DEV_INCOMPAT)
    service = stream.object
    if not isinstance(service, SyncService):
        raise ODError(ODR.DEV_INCOMPAT)
    return service


def write_entry_1005(stream: Any, data: bytes) -> int:
    """Update the SYNC COB-ID and whether this node produces SYNC."""
    service = _service_of(stream, data, 4)
    with service._lock:
        cob_id_sync = struct.unpack("<I", bytes(data))[0]
        service._logger.info("updating COB-ID x%x", cob_id_sync)
        can_id = cob_id_sync & 0x7FF
        is_producer = (cob_id_sync & 0x40000000) != 0
        if (
            (cob_id_sync & 0xBFFFF800) != 0
            or is_id_restricted(can_id)
            or (service._is_producer and is_producer and can_id != service._cob_id)
        ):
            raise ODError(ODR.INVALID_VALUE)
        if can_id != service._cob_id:
            try:
                service._bus.subscribe(can_id, 0x7FF, False, service)
            except Exception as err:
                raise ODError(ODR.DEV_INCOMPAT) from err
            service._logger.info("updating COB-ID from x%x to x%x", service._cob_id, can_id)
            service._tx_frame = Frame(can_id, 0, 1 if service._counter_overflow else 0)
            service._cob_id = can_id
        service._is_producer = is_producer
        if is_producer:
            service._logger.info("is producer")
            service._counter = 0
            service._timer = 0
        else:
            service._logger.info("not producer")
        return write_entry_default(stream, data)


def write_entry_1006(stream: Any, data: bytes) -> int:
    """Update the communication cycle period."""
    service = _service_of(stream, data, 4)
    with service._lock:
        period_us = struct.unpack("<I", bytes(data))[0]
        service._logger.info("updating communication cycle: %d ms", period_us // 1000)
        return write_entry_default(stream, data)


def write_entry_1007(stream: Any, data: bytes) -> int:
    """Update the synchronous window length."""
    service = _service_of(stream, data, 4)
    window_us = struct.unpack("<I", bytes(data))[0]
    service._logger.info("updating synchronous window length: %d ms", window_us // 1000)
    with service._lock:
        return write_entry_default(stream, data)


def write_entry_1019(stream: Any, data: bytes) -> int:
    """Update the synchronous counter overflow value."""
    service = _service_of(stream, data, 1, check_subindex=False)
    with service._lock:
        overflow = data[0]
        if overflow == 1 or overflow > 240:
            raise ODError(ODR.INVALID_VALUE)
        try:
            period = service._comm_cycle_period.uint32(0)
        except ODError as err:
            raise ODError(ODR.DATA_DEV_STATE) from err
        if period != 0:
            raise ODError(ODR.DATA_DEV_STATE)
        service._tx_frame = Frame(service._cob_id, 0, 1 if overflow else 0)
        service._counter_overflow = overflow
        service._logger.info("updating synchronous counter overflow %d", overflow)
        return write_entry_default(stream, data)