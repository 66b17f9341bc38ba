"""CANopen transmit PDO."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from canservices.pdo_common import (
    MAX_PDO_LENGTH,
    TRANSMISSION_TYPE_SYNC_240,
    TRANSMISSION_TYPE_SYNC_ACYCLIC,
    TRANSMISSION_TYPE_SYNC_EVENT_LO,
    PDOCommon,
)
from canservices.pdo_extensions import (
    read_entry_14xx_or_18xx,
    write_entry_16xx_or_1axx,
    write_entry_18xx,
)
from canservices.rpdo import EM_PDO_WRONG_MAPPING, ERR_PROTOCOL_ERROR
from canservices.sdo_common import (
    Frame,
    IllegalArgumentError,
    ODError,
    ODParametersError,
    read_entry_default,
)

_SYNC_COUNTER_RESET = 255
_SYNC_COUNTER_WAIT_START = 254


class TPDO:
    """Reads the mapped object dictionary variables and transmits them as a PDO.

    The bus must offer ``send(frame)``. The emergency object must offer
    ``error_report(bit, code, info)``. The sync object, if any, must offer
    ``counter()`` and ``counter_overflow()``. Entries must offer
    ``uint8``/``uint16``/``uint32(subindex)``, ``index`` and
    ``add_extension(obj, read, write)``.
    """

    def __init__(
        self,
        bus: Any,
        odict: Any,
        emcy: Any,
        sync: Any,
        entry18xx: Any,
        entry1axx: Any,
        predefined_ident: int,
        logger: logging.Logger | None = None,
    ):
        if odict is None or entry18xx is None or entry1axx is None or bus is None or emcy is None:
            raise IllegalArgumentError("bus, object dictionary, emergency and entries are required")
        self.bus = bus
        self.lock = threading.Lock()
        self.sync = None
        self.tx_frame = Frame(0, 0, 0)
        self.transmission_type = 0
        self.send_request = False
        self.sync_start_value = 0
        self.sync_counter = _SYNC_COUNTER_RESET
        self.inhibit_time_us = 0
        self.event_time_us = 0
        self.inhibit_timer = 0
        self.event_timer = 0
        self.pdo = PDOCommon(odict, entry1axx, False, emcy, logger)
        logger = self.pdo.logger

        self._configure_transmission_type(entry18xx)
        can_id = self._configure_cob_id(entry18xx, predefined_ident, self.pdo.erroneous_map)

        inhibit_time = self._read_optional(entry18xx, entry18xx.uint16, 3, "inhibit time")
        self.inhibit_time_us = inhibit_time * 100
        event_time = self._read_optional(entry18xx, entry18xx.uint16, 5, "event timer")
        self.event_time_us = event_time * 1000
        self.sync_start_value = self._read_optional(entry18xx, entry18xx.uint8, 6, "sync start")
        self.sync = sync
        self.sync_counter = _SYNC_COUNTER_RESET

        self.pdo.predefined_id = predefined_ident
        self.pdo.configured_id = can_id
        entry18xx.add_extension(self, read_entry_14xx_or_18xx, write_entry_18xx)
        entry1axx.add_extension(self, read_entry_default, write_entry_16xx_or_1axx)
        logger.debug(
            "TPDO finished initializing: canId=x%x valid=%s inhibit time=%d event time=%d transmission type=%d",
            can_id, self.pdo.valid, inhibit_time, event_time, self.transmission_type,
        )

    def _read_optional(self, entry: Any, reader: Callable[[int], int], subindex: int, what: str) -> int:
        try:
            return reader(subindex)
        except ODError as err:
            self.pdo.logger.warning(
                "TPDO reading %s failed: index x%x subindex %d: %s", what, entry.index, subindex, err
            )
            return 0

    def _configure_transmission_type(self, entry18xx: Any) -> None:
        with self.lock:
            try:
                transmission_type = entry18xx.uint8(2)
            except ODError as err:
                self.pdo.logger.error("TPDO reading failed: index x%x subindex 2: %s", entry18xx.index, err)
                raise ODParametersError("cannot read TPDO transmission type") from err
            if TRANSMISSION_TYPE_SYNC_240 < transmission_type < TRANSMISSION_TYPE_SYNC_EVENT_LO:
                transmission_type = TRANSMISSION_TYPE_SYNC_EVENT_LO
            self.transmission_type = transmission_type
            self.send_request = True

    def _configure_cob_id(self, entry18xx: Any, predefined_ident: int, erroneous_map: int) -> int:
        with self.lock:
            pdo = self.pdo
            try:
                cob_id = entry18xx.uint32(1)
            except ODError as err:
                pdo.logger.error("TPDO reading failed: index x%x subindex 1: %s", entry18xx.index, err)
                raise ODParametersError("cannot read TPDO COB-ID") from err
            valid = (cob_id & 0x80000000) == 0
            can_id = cob_id & 0x7FF
            if valid and (pdo.nb_mapped == 0 or can_id == 0):
                valid = False
                if erroneous_map == 0:
                    erroneous_map = 1
            if erroneous_map != 0:
                info = cob_id if erroneous_map == 1 else erroneous_map
                pdo.emcy.error_report(EM_PDO_WRONG_MAPPING, ERR_PROTOCOL_ERROR, info)
            if not valid:
                can_id = 0
            # A default id stored in the dictionary gets the node id added
            if can_id != 0 and can_id == (predefined_ident & 0xFF80):
                can_id = predefined_ident
            self.tx_frame = Frame(can_id, 0, pdo.data_length)
            pdo.valid = valid
            return can_id

    def process(self, time_difference_us: int, nmt_is_operational: bool, sync_was: bool) -> None:
        """Run one cycle of the TPDO state machine, transmitting when due."""
        with self.lock:
            pdo = self.pdo
            if not pdo.valid or not nmt_is_operational:
                self.send_request = True
                self.inhibit_timer = 0
                self.event_timer = 0
                self.sync_counter = _SYNC_COUNTER_RESET
                return

            transmission_type = self.transmission_type
            if (
                transmission_type == TRANSMISSION_TYPE_SYNC_ACYCLIC
                or transmission_type >= TRANSMISSION_TYPE_SYNC_EVENT_LO
            ):
                if self.event_time_us != 0:
                    self.event_timer = max(self.event_timer - time_difference_us, 0)
                    if self.event_timer == 0:
                        self.send_request = True
                if not self.send_request and any(
                    flag is not None and not flag.is_set() for flag in pdo.flags[: pdo.nb_mapped]
                ):
                    self.send_request = True

            if transmission_type >= TRANSMISSION_TYPE_SYNC_EVENT_LO:
                self.inhibit_timer = max(self.inhibit_timer - time_difference_us, 0)
                if self.send_request and self.inhibit_timer == 0:
                    try:
                        self._send_locked()
                    except Exception as err:
                        pdo.logger.warning("TPDO event driven transmission failed: %s", err)
                return

            if self.sync is None or not sync_was:
                return

            if transmission_type == TRANSMISSION_TYPE_SYNC_ACYCLIC and self.send_request:
                self._send_locked()
                return

            if self.sync_counter == _SYNC_COUNTER_RESET:
                if self.sync.counter_overflow() != 0 and self.sync_start_value != 0:
                    self.sync_counter = _SYNC_COUNTER_WAIT_START
                else:
                    self.sync_counter = transmission_type // 2 + 1

            # With a sync start value, the first TPDO goes out on the matching SYNC
            if self.sync_counter == _SYNC_COUNTER_WAIT_START:
                if self.sync.counter() == self.sync_start_value:
                    self.sync_counter = transmission_type
                    self._send_locked()
            elif self.sync_counter == 1:
                self.sync_counter = transmission_type
                self._send_locked()
            else:
                self.sync_counter = (self.sync_counter - 1) & 0xFF

    def send(self) -> None:
        """Read the mapped variables and transmit the PDO now."""
        with self.lock:
            self._send_locked()

    def _send_locked(self) -> None:
        pdo = self.pdo
        event_driven = (
            self.transmission_type == TRANSMISSION_TYPE_SYNC_ACYCLIC
            or self.transmission_type >= TRANSMISSION_TYPE_SYNC_EVENT_LO
        )
        offset = 0
        for mapped, flag in zip(pdo.mapped[: pdo.nb_mapped], pdo.flags[: pdo.nb_mapped]):
            buffer = bytearray(max(MAX_PDO_LENGTH - offset, 0))
            try:
                count = mapped.read(buffer)
            except ODError as err:
                pdo.logger.warning("TPDO failed to send: cobId x%x: %s", pdo.configured_id, err)
                raise
            self.tx_frame.data[offset:offset + count] = buffer[:count]
            if flag is not None and event_driven:
                flag.set()
            offset += mapped.mapped_length
        self.send_request = False
        self.event_timer = self.event_time_us
        self.inhibit_timer = self.inhibit_time_us
        frame = self.tx_frame
        self.bus.send(Frame(frame.id, frame.flags, frame.dlc, bytearray(frame.data)))