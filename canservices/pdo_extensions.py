"""Object dictionary write and read hooks for PDO communication and mapping parameters.

The object behind a stream is an RPDO or a TPDO. It must carry ``pdo`` (a
:class:`PDOCommon`), ``lock`` and ``bus`` (offering ``subscribe``). An RPDO
also carries ``rx_new``, ``synchronous``, ``timeout_time_us`` and
``timeout_timer``. A TPDO also carries ``tx_frame``, ``transmission_type``,
``send_request``, ``sync_counter``, ``sync_start_value``, ``inhibit_time_us``,
``inhibit_timer``, ``event_time_us`` and ``event_timer``.
"""

from __future__ import annotations

from typing import Any

from canservices.pdo_common import (
    MAX_MAPPED_ENTRIES_PDO,
    MAX_PDO_LENGTH,
    TRANSMISSION_TYPE_SYNC_240,
    TRANSMISSION_TYPE_SYNC_EVENT_LO,
    PDOCommon,
)
from canservices.sdo_common import (
    Frame,
    ODError,
    ODR,
    is_id_restricted,
    read_entry_default,
    write_entry_default,
)


def _owner(stream: Any, rpdo: bool | None = None) -> Any:
    """The PDO behind a stream; with ``rpdo`` given, it must be of that kind."""
    owner = getattr(stream, "object", None)
    pdo = getattr(owner, "pdo", None)
    if not isinstance(pdo, PDOCommon) or (rpdo is not None and pdo.is_rpdo != rpdo):
        raise ODError(ODR.DEV_INCOMPAT)
    return owner


def _uint(data: bytes, size: int) -> int:
    if len(data) < size:
        raise ODError(ODR.TYPE_MISMATCH)
    return int.from_bytes(bytes(data[:size]), "little")


def _check_cob_id(pdo: PDOCommon, cob_id: int) -> tuple[int, bool]:
    """Validate a new COB-ID and return its CAN id and valid flag."""
    can_id = cob_id & 0x7FF
    valid = (cob_id & 0x80000000) == 0
    # bits 11..29 must be zero, the PDO must be disabled on change,
    # restricted ids are refused and mapping must exist before enabling
    if (
        (cob_id & 0x3FFFF800) != 0
        or (valid and pdo.valid and can_id != pdo.configured_id)
        or (valid and is_id_restricted(can_id))
        or (valid and pdo.nb_mapped == 0)
    ):
        raise ODError(ODR.INVALID_VALUE)
    return can_id, valid


def _check_transmission_type(transmission_type: int) -> None:
    if TRANSMISSION_TYPE_SYNC_240 < transmission_type < TRANSMISSION_TYPE_SYNC_EVENT_LO:
        raise ODError(ODR.INVALID_VALUE)


def _store_without_node_id(stored: bytearray, pdo: PDOCommon, cob_id: int, can_id: int) -> None:
    if can_id == pdo.predefined_id:
        stored[0:4] = (cob_id & 0xFFFFFF80).to_bytes(4, "little")


def write_entry_14xx(stream: Any, data: bytes) -> int:
    """Update an RPDO communication parameter."""
    if stream is None or data is None or len(data) > 4:
        raise ODError(ODR.DEV_INCOMPAT)
    rpdo = _owner(stream, rpdo=True)
    with rpdo.lock:
        pdo = rpdo.pdo
        stored = bytearray(data)
        if stream.subindex == 1:
            cob_id = _uint(data, 4)
            can_id, valid = _check_cob_id(pdo, cob_id)
            pdo.logger.debug("RPDO updating cob-id: valid=%s canId=x%x", valid, can_id)
            if valid != pdo.valid or can_id != pdo.configured_id:
                _store_without_node_id(stored, pdo, cob_id, can_id)
                if not valid:
                    can_id = 0
                try:
                    rpdo.bus.subscribe(can_id, 0x7FF, False, rpdo)
                    failed = False
                except Exception:
                    failed = True
                if valid and not failed:
                    pdo.valid = True
                    pdo.configured_id = can_id
                else:
                    pdo.valid = False
                    rpdo.rx_new[0] = False
                    rpdo.rx_new[1] = False
                    if failed:
                        raise ODError(ODR.DEV_INCOMPAT)
                pdo.logger.debug("RPDO updated cob-id: valid=%s cobId=x%x", valid, pdo.configured_id & 0x7FF)
        elif stream.subindex == 2:
            transmission_type = _uint(data, 1)
            _check_transmission_type(transmission_type)
            synchronous = transmission_type <= TRANSMISSION_TYPE_SYNC_240
            # Drop an old message waiting in the second buffer
            if rpdo.synchronous != synchronous:
                rpdo.rx_new[1] = False
            rpdo.synchronous = synchronous
            pdo.logger.debug("RPDO updated transmission type %d", transmission_type)
        elif stream.subindex == 5:
            event_time = _uint(data, 2)
            rpdo.timeout_time_us = event_time * 1000
            rpdo.timeout_timer = 0
            pdo.logger.debug("RPDO updated event timer %d", event_time)
        return write_entry_default(stream, stored)


def read_entry_14xx_or_18xx(stream: Any, data: bytearray) -> int:
    """Read a PDO communication parameter, adding the node id and valid bit to the COB-ID."""
    count = read_entry_default(stream, data)
    if stream.subindex == 1 and count == 4:
        owner = _owner(stream)
        with owner.lock:
            pdo = owner.pdo
            cob_id = int.from_bytes(bytes(data[:4]), "little")
            can_id = cob_id & 0x7FF
            if can_id != 0 and can_id == (pdo.predefined_id & 0xFF80):
                cob_id = (cob_id & 0xFFFF0000) | pdo.predefined_id
            if not pdo.valid:
                cob_id |= 0x80000000
            data[0:4] = cob_id.to_bytes(4, "little")
    return count


def write_entry_16xx_or_1axx(stream: Any, data: bytes) -> int:
    """Update a PDO mapping parameter (the PDO must be disabled)."""
    if stream is None or data is None or stream.subindex > MAX_MAPPED_ENTRIES_PDO:
        raise ODError(ODR.DEV_INCOMPAT)
    owner = _owner(stream)
    with owner.lock:
        pdo = owner.pdo
        pdo.logger.debug("%s updating mapping parameter", pdo.type_name())
        if pdo.valid or (pdo.nb_mapped != 0 and stream.subindex > 0):
            raise ODError(ODR.UNSUPP_ACCESS)
        if stream.subindex == 0:
            count = _uint(data, 1)
            if count > MAX_MAPPED_ENTRIES_PDO:
                raise ODError(ODR.MAP_LEN)
            total = 0
            for mapped in pdo.mapped[:count]:
                if mapped.mapped_length > mapped.data_length:
                    raise ODError(ODR.NO_MAP)
                total += mapped.mapped_length
            if total > MAX_PDO_LENGTH:
                raise ODError(ODR.MAP_LEN)
            if total == 0 and count > 0:
                raise ODError(ODR.INVALID_VALUE)
            pdo.data_length = total
            pdo.nb_mapped = count
            pdo.logger.debug("%s updated number of mapped objects to %d", pdo.type_name(), count)
        else:
            pdo.configure_map(_uint(data, 4), stream.subindex - 1)
        return write_entry_default(stream, data)


def write_entry_18xx(stream: Any, data: bytes) -> int:
    """Update a TPDO communication parameter."""
    if stream is None or data is None or len(data) > 4:
        raise ODError(ODR.DEV_INCOMPAT)
    tpdo = _owner(stream, rpdo=False)
    with tpdo.lock:
        pdo = tpdo.pdo
        stored = bytearray(data)
        if stream.subindex == 1:
            cob_id = _uint(data, 4)
            can_id, valid = _check_cob_id(pdo, cob_id)
            pdo.logger.debug("TPDO updating cob-id: valid=%s canId=x%x", valid, can_id)
            if valid != pdo.valid or can_id != pdo.configured_id:
                _store_without_node_id(stored, pdo, cob_id, can_id)
                if not valid:
                    can_id = 0
                tpdo.tx_frame = Frame(can_id, 0, pdo.data_length)
                pdo.valid = valid
                pdo.configured_id = can_id
        elif stream.subindex == 2:
            transmission_type = _uint(data, 1)
            _check_transmission_type(transmission_type)
            tpdo.sync_counter = 255
            tpdo.transmission_type = transmission_type
            tpdo.send_request = True
            tpdo.inhibit_timer = 0
            tpdo.event_timer = 0
        elif stream.subindex == 3:
            if pdo.valid:
                raise ODError(ODR.INVALID_VALUE)
            tpdo.inhibit_time_us = _uint(data, 2) * 100
            tpdo.inhibit_timer = 0
        elif stream.subindex == 5:
            tpdo.event_time_us = _uint(data, 2) * 1000
            tpdo.event_timer = 0
        elif stream.subindex == 6:
            sync_start_value = _uint(data, 1)
            if pdo.valid or sync_start_value > 240:
                raise ODError(ODR.INVALID_VALUE)
            tpdo.sync_start_value = sync_start_value
        return write_entry_default(stream, stored)