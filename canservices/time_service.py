"""CANopen TIME producer and consumer."""

from __future__ import annotations

import logging
import struct
import threading
from datetime import datetime, timedelta
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

TIMESTAMP_ORIGIN = datetime(1984, 1, 1)
_MS_PER_DAY = 1000 * 60 * 60 * 24


def _to_local_naive(moment: datetime) -> datetime:
    if moment.tzinfo is not None:
        return moment.astimezone().replace(tzinfo=None)
    return moment


class TimeService:
    """Keeps the network time and exchanges TIME stamps on the bus.

    The bus must offer ``subscribe(ident, mask, rtr, handler)`` and ``send(frame)``;
    the entry (0x1012) must offer ``uint32(subindex)``, ``index`` and
    ``add_extension(obj, read, write)``.
    """

    def __init__(self, bus: Any, entry1012: Any, producer_interval_ms: int = 0, logger: logging.Logger | None = None):
        if entry1012 is None or bus is None:
            raise IllegalArgumentError("bus and entry 0x1012 are required")
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._bus = bus
        self._raw_timestamp = bytes(6)
        self._ms = 0
        self._days = 0
        self._residual_us = 0
        self._rx_new = False
        try:
            cob_id = entry1012.uint32(0)
        except ODError as err:
            self._logger.error("reading cob id timestamp failed: index x%x subindex 0x0: %s", entry1012.index, err)
            raise ODParametersError("cannot read TIME COB-ID") from err
        entry1012.add_extension(self, read_entry_default, write_entry_1012)
        self._is_consumer = (cob_id & 0x80000000) != 0
        self._is_producer = (cob_id & 0x40000000) != 0
        self.cob_id = cob_id & 0x7FF
        if self._is_consumer:
            try:
                bus.subscribe(self.cob_id, 0x7FF, False, self)
            except Exception as err:
                raise IllegalArgumentError("cannot subscribe to TIME frames") from err
        self.set_internal_time(datetime.now())
        self._producer_interval_ms = producer_interval_ms
        self._producer_timer_ms = producer_interval_ms
        self._logger.info("initialized time object: producer=%s consumer=%s", self._is_producer, self._is_consumer)
        if self._is_producer:
            self._logger.info("publish period %d ms", producer_interval_ms)

    @property
    def days(self) -> int:
        """Days since 1 January 1984."""
        return self._days

    @property
    def ms(self) -> int:
        """Milliseconds after midnight."""
        return self._ms

    @property
    def producer_interval_ms(self) -> int:
        return self._producer_interval_ms

    def handle(self, frame: Frame) -> None:
        """Take in a received TIME frame."""
        with self._lock:
            if frame.dlc != 6:
                return
            self._raw_timestamp = bytes(frame.data[:6])
            self._rx_new = True

    def process(self, nmt_is_pre_or_operational: bool, time_difference_us: int) -> bool:
        """Advance the clock, publish if producing; return whether a timestamp was received."""
        with self._lock:
            received = False
            if nmt_is_pre_or_operational and self._is_consumer:
                if self._rx_new:
                    ms, days = struct.unpack("<IH", self._raw_timestamp)
                    self._ms = ms & 0x0FFFFFFF
                    self._days = days
                    self._residual_us = 0
                    received = True
                    self._rx_new = False
            else:
                self._rx_new = False

            elapsed_ms = 0
            if not received and time_difference_us > 0:
                us = time_difference_us + self._residual_us
                elapsed_ms, self._residual_us = divmod(us, 1000)
                self._ms = (self._ms + elapsed_ms) & 0xFFFFFFFF
                if self._ms >= _MS_PER_DAY:
                    self._ms -= _MS_PER_DAY
                    self._days = (self._days + 1) & 0xFFFF

            if nmt_is_pre_or_operational and self._is_producer and self._producer_interval_ms > 0:
                if self._producer_timer_ms < self._producer_interval_ms:
                    self._producer_timer_ms += elapsed_ms
                    return received
                self._producer_timer_ms -= self._producer_interval_ms
                frame = Frame(self.cob_id, 0, 6)
                frame.data[0:6] = struct.pack("<IH", self._ms, self._days)
                self._bus.send(frame)
                return received

            self._producer_timer_ms = self._producer_interval_ms
            return received

    def set_internal_time(self, internal_time: datetime) -> None:
        """Set the clock from a datetime (naive values are local time)."""
        moment = _to_local_naive(internal_time)
        with self._lock:
            days = int((moment - TIMESTAMP_ORIGIN) / timedelta(days=1)) & 0xFFFF
            midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
            ms = (moment - midnight) // timedelta(milliseconds=1)
            self._residual_us = 0
            self._ms = ms & 0xFFFFFFFF
            self._days = days
            self._logger.info("setting date %s (days=%d, ms=%d since 01/01/1984)", moment, days, ms)

    def set_producer_interval_ms(self, producer_interval_ms: int) -> None:
        with self._lock:
            self._producer_interval_ms = producer_interval_ms
            self._producer_timer_ms = producer_interval_ms

    def internal_time(self) -> datetime:
        """The current clock value as a naive local datetime."""
        with self._lock:
            return TIMESTAMP_ORIGIN + timedelta(
                days=self._days, milliseconds=self._ms, microseconds=self._residual_us
            )

    def is_producer(self) -> bool:
        return self._is_producer

    def is_consumer(self) -> bool:
        return self._is_consumer


def write_entry_1012(stream: Any, data: bytes) -> int:
    """Update the TIME COB-ID and the producer / consumer roles."""
    if stream is None or data is None or stream.subindex != 0 or len(data) != 4:
        raise ODError(ODR.DEV_INCOMPAT)
    service = stream.object
    if not isinstance(service, TimeService):
        raise ODError(ODR.DEV_INCOMPAT)
    cob_id = struct.unpack("<I", bytes(data))[0]
    can_id = cob_id & 0x7FF
    if (cob_id & 0x3FFFF800) != 0 or is_id_restricted(can_id):
        raise ODError(ODR.INVALID_VALUE)
    with service._lock:
        service._is_producer = (cob_id & 0x40000000) != 0
        service._is_consumer = (cob_id & 0x80000000) != 0
        if service._is_consumer:
            try:
                service._bus.subscribe(service.cob_id, 0x7FF, False, service)
            except Exception as err:
                raise ODError(ODR.DEV_INCOMPAT) from err
    return write_entry_default(stream, data)