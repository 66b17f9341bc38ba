"""CANopen receive PDO."""

from __future__ import annotations

import logging
import threading
from typing import Any

from canservices.pdo_common import (
    BUFFER_COUNT_RPDO,
    MAX_PDO_LENGTH,
    TRANSMISSION_TYPE_SYNC_240,
    PDOCommon,
)
from canservices.pdo_extensions import (
    read_entry_14xx_or_18xx,
    write_entry_14xx,
    write_entry_16xx_or_1axx,
)
from canservices.sdo_common import (
    Frame,
    IllegalArgumentError,
    ODError,
    ODParametersError,
    read_entry_default,
)

# Emergency error status bits and error codes used by PDOs
EM_RPDO_WRONG_LENGTH = 0x04
EM_RPDO_TIME_OUT = 0x17
EM_PDO_WRONG_MAPPING = 0x1A
ERR_PROTOCOL_ERROR = 0x8200
ERR_PDO_LENGTH = 0x8210
ERR_PDO_LENGTH_EXC = 0x8220
ERR_RPDO_TIMEOUT = 0x8250

RX_ACK_NO_ERROR = 0  # no error
RX_ACK_ERROR = 1  # error is acknowledged
RX_ACK = 10  # auxiliary value
RX_OK = 11  # correct RPDO received, not acknowledged
RX_SHORT = 12  # too short RPDO received, not acknowledged
RX_LONG = 13  # too long RPDO received, not acknowledged


class RPDO:
    """Receives a PDO and writes its content into the mapped object dictionary variables.

    The bus must offer ``subscribe(ident, mask, rtr, handler)``. The emergency object
    must offer ``error(set_error, bit, code, info)``, ``error_report(bit, code, info)``
    and ``error_reset(bit, info)``. The sync object, if any, must offer ``rx_toggle()``.
    Entries must offer ``uint8``/``uint16``/``uint32(subindex)``, ``index`` and
    ``add_extension(obj, read, write)``.
    """

    def __init__(
        self,
        bus: Any,
        odict: Any,
        emcy: Any,
        sync: Any,
        entry14xx: Any,
        entry16xx: Any,
        predefined_ident: int,
        logger: logging.Logger | None = None,
    ):
        if odict is None or entry14xx is None or entry16xx is None or bus is None or emcy is None:
            raise IllegalArgumentError("bus, object dictionary, emergency and entries are required")
        self.bus = bus
        self.lock = threading.Lock()
        self.rx_new = [False] * BUFFER_COUNT_RPDO
        self.rx_data = [bytearray(MAX_PDO_LENGTH) for _ in range(BUFFER_COUNT_RPDO)]
        self.receive_error = RX_ACK_NO_ERROR
        self.pdo = PDOCommon(odict, entry16xx, True, emcy, logger)
        logger = self.pdo.logger

        can_id = self._configure_cob_id(entry14xx, predefined_ident, self.pdo.erroneous_map)

        try:
            transmission_type = entry14xx.uint8(2)
        except ODError as err:
            logger.error("RPDO reading transmission type failed: index x%x subindex 2: %s", entry14xx.index, err)
            raise ODParametersError("cannot read RPDO transmission type") from err
        self.sync = sync
        self.synchronous = transmission_type <= TRANSMISSION_TYPE_SYNC_240

        try:
            event_time = entry14xx.uint16(5)
        except ODError as err:
            logger.error("RPDO reading event timer failed: index x%x subindex 5: %s", entry14xx.index, err)
            event_time = 0
        self.timeout_time_us = event_time * 1000
        self.timeout_timer = 0

        self.pdo.predefined_id = predefined_ident
        self.pdo.configured_id = can_id
        entry14xx.add_extension(self, read_entry_14xx_or_18xx, write_entry_14xx)
        entry16xx.add_extension(self, read_entry_default, write_entry_16xx_or_1axx)
        logger.debug(
            "RPDO finished initializing: canId=x%x valid=%s event time=%d synchronous=%s",
            can_id, self.pdo.valid, event_time, self.synchronous,
        )

    def _configure_cob_id(self, entry14xx: Any, predefined_ident: int, erroneous_map: int) -> int:
        with self.lock:
            pdo = self.pdo
            try:
                cob_id = entry14xx.uint32(1)
            except ODError as err:
                pdo.logger.error("RPDO reading failed: index x%x subindex 1: %s", entry14xx.index, err)
                raise ODParametersError("cannot read RPDO COB-ID") from err
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
            self.bus.subscribe(can_id, 0x7FF, False, self)
            pdo.valid = valid
            return can_id

    def handle(self, frame: Frame) -> None:
        """Take in a received PDO frame."""
        with self.lock:
            pdo = self.pdo
            if not pdo.valid:
                return
            err = self.receive_error
            if frame.dlc >= pdo.data_length:
                if frame.dlc == pdo.data_length:
                    if err == RX_ACK_ERROR:
                        err = RX_OK
                elif err == RX_ACK_NO_ERROR:
                    err = RX_LONG
                buf_no = 1 if self.synchronous and self.sync is not None and self.sync.rx_toggle() else 0
                self.rx_data[buf_no] = bytearray(frame.data)
                self.rx_new[buf_no] = True
            elif err == RX_ACK_NO_ERROR:
                err = RX_SHORT
            self.receive_error = err

    def process(self, time_difference_us: int, nmt_is_operational: bool, sync_was: bool) -> None:
        """Copy received data into the dictionary and watch for length errors and timeouts."""
        with self.lock:
            pdo = self.pdo
            if not pdo.valid or not nmt_is_operational or (not sync_was and self.synchronous):
                if not pdo.valid or not nmt_is_operational:
                    self.rx_new[0] = False
                    self.rx_new[1] = False
                    self.timeout_timer = 0
                return

            if self.receive_error > RX_ACK:
                set_error = self.receive_error != RX_OK
                code = ERR_PDO_LENGTH if self.receive_error == RX_SHORT else ERR_PDO_LENGTH_EXC
                pdo.emcy.error(set_error, EM_RPDO_WRONG_LENGTH, code, pdo.data_length)
                self.receive_error = RX_ACK_ERROR if set_error else RX_ACK_NO_ERROR

            buf_no = 1 if self.synchronous and self.sync is not None and not self.sync.rx_toggle() else 0

            received = False
            while self.rx_new[buf_no]:
                received = True
                data = self.rx_data[buf_no]
                self.rx_new[buf_no] = False
                offset = 0
                for mapped in pdo.mapped[: pdo.nb_mapped]:
                    length = mapped.mapped_length
                    data_length = min(mapped.data_length, MAX_PDO_LENGTH)
                    end = offset + max(length, data_length)
                    try:
                        mapped.write(bytes(data[offset:end]))
                    except ODError as err:
                        pdo.logger.warning(
                            "RPDO failed to write to OD on reception: configured id x%x: %s",
                            pdo.configured_id, err,
                        )
                    offset += length

            if self.timeout_time_us <= 0:
                return
            if received:
                if self.timeout_timer > self.timeout_time_us:
                    pdo.emcy.error_reset(EM_RPDO_TIME_OUT, self.timeout_timer)
                self.timeout_timer = 1
            elif 0 < self.timeout_timer < self.timeout_time_us:
                self.timeout_timer += time_difference_us
                if self.timeout_timer > self.timeout_time_us:
                    pdo.emcy.error_report(EM_RPDO_TIME_OUT, ERR_RPDO_TIMEOUT, self.timeout_timer)