"""Object dictionary write hook for SDO server parameters.

The object behind the stream is an SDO server carrying ``cob_id_client_to_server``,
``cob_id_server_to_client``, ``valid`` and ``node_id``, and offering
``init_rx_tx(cob_id_client_to_server, cob_id_server_to_client)``, which raises on failure.
"""

from __future__ import annotations

from typing import Any

from canservices.sdo_common import ODError, ODR, is_id_restricted, write_entry_default


def _server_of(stream: Any) -> Any:
    server = getattr(stream, "object", None)
    if not callable(getattr(server, "init_rx_tx", None)):
        raise ODError(ODR.DEV_INCOMPAT)
    return server


def _check_cob_id(data: bytes, valid_now: bool, current: int) -> int:
    if len(data) < 4:
        raise ODError(ODR.TYPE_MISMATCH)
    cob_id = int.from_bytes(bytes(data[:4]), "little")
    can_id = cob_id & 0x7FF
    valid = (cob_id & 0x80000000) == 0
    if (
        (cob_id & 0x3FFFF800) != 0
        or (valid and valid_now and can_id != (current & 0x7FF))
        or (valid and is_id_restricted(can_id))
    ):
        raise ODError(ODR.INVALID_VALUE)
    return cob_id


def write_entry_1201(stream: Any, data: bytes) -> int:
    """Update an SDO server parameter (COB-IDs or node id of the client)."""
    if stream is None or data is None:
        raise ODError(ODR.DEV_INCOMPAT)
    server = _server_of(stream)
    subindex = stream.subindex
    if subindex == 0:
        raise ODError(ODR.READONLY)
    if subindex == 1:
        cob_id = _check_cob_id(data, server.valid, server.cob_id_client_to_server)
        try:
            server.init_rx_tx(cob_id, server.cob_id_server_to_client)
        except Exception as err:
            raise ODError(ODR.DEV_INCOMPAT) from err
    elif subindex == 2:
        cob_id = _check_cob_id(data, server.valid, server.cob_id_server_to_client)
        try:
            server.init_rx_tx(server.cob_id_client_to_server, cob_id)
        except Exception as err:
            raise ODError(ODR.DEV_INCOMPAT) from err
    elif subindex == 3:
        if len(data) != 1:
            raise ODError(ODR.TYPE_MISMATCH)
        node_id = data[0]
        if not 1 <= node_id <= 127:
            raise ODError(ODR.INVALID_VALUE)
        server.node_id = node_id
    else:
        raise ODError(ODR.SUB_NOT_EXIST)
    return write_entry_default(stream, data)