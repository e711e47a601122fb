"""Request and response messages of the file service and their wire encoding.

Messages travel as compact JSON objects with sorted keys.  Byte fields are
carried as base64 text.  Missing fields take their default value and unknown
fields are ignored, so an empty payload decodes to a message of defaults.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field, fields, is_dataclass
from typing import Any, TypeVar, get_args, get_origin

_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1

M = TypeVar("M")


@dataclass
class HandleUploadFileRequest:
    """A client's request for a data node to upload to."""


@dataclass
class HandleUploadFileResponse:
    """The data node chosen for an upload."""

    port_number: int = 0
    ip_address: str = ""


@dataclass
class HandleDownloadFileRequest:
    """A client's request for the data nodes that hold a file."""

    file_name: str = ""


@dataclass
class HandleDownloadFileResponse:
    """Addresses of the live data nodes that hold a file."""

    ip_address: list[str] = field(default_factory=list)
    port_numbers: list[int] = field(default_factory=list)


@dataclass
class NotifyUploadedRequest:
    """A data node's report that it now stores a file."""

    file_name: str = ""
    data_node: int = 0
    file_path: str = ""


@dataclass
class NotifyUploadedResponse:
    """Acknowledgement of an upload notification."""


@dataclass
class ReplicateRequest:
    """Instruction to copy a stored file to other data nodes."""

    file_name: str = ""
    file_path: str = ""
    ip_addresses: list[str] = field(default_factory=list)
    port_numbers: list[int] = field(default_factory=list)
    ids: list[int] = field(default_factory=list)


@dataclass
class ReplicateResponse:
    """Acknowledgement of a replication instruction."""


@dataclass
class KeepAliveRequest:
    """A data node's heartbeat, with its master, client and peer ports."""

    data_node_ip: str = ""
    port_number: list[str] = field(default_factory=list)
    is_alive: bool = False


@dataclass
class KeepAliveResponse:
    """Acknowledgement of a heartbeat."""


@dataclass
class FileUploadRequest:
    """A file name with (part of) its content."""

    file_name: str = ""
    file_content: bytes = b""


@dataclass
class FileUploadResponse:
    """Outcome of an upload step."""

    message: str = ""


@dataclass
class FileDownloadRequest:
    """A request for the content of a stored file."""

    file_name: str = ""


@dataclass
class FileDownloadResponse:
    """The content of a stored file."""

    file_content: bytes = b""


@dataclass
class SendNotificationRequest:
    """A message pushed to a client."""

    message: str = ""


@dataclass
class SendNotificationResponse:
    """Acknowledgement of a notification."""


_MESSAGE_TYPES = frozenset(
    {
        HandleUploadFileRequest,
        HandleUploadFileResponse,
        HandleDownloadFileRequest,
        HandleDownloadFileResponse,
        NotifyUploadedRequest,
        NotifyUploadedResponse,
        ReplicateRequest,
        ReplicateResponse,
        KeepAliveRequest,
        KeepAliveResponse,
        FileUploadRequest,
        FileUploadResponse,
        FileDownloadRequest,
        FileDownloadResponse,
        SendNotificationRequest,
        SendNotificationResponse,
    }
)

_TYPES = {
    "str": str,
    "int": int,
    "bool": bool,
    "bytes": bytes,
    "list[str]": list[str],
    "list[int]": list[int],
}


def _kind(annotation: Any) -> Any:
    return _TYPES[annotation] if isinstance(annotation, str) else annotation


def _check_int(value: Any, name: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"field {name!r} must be an integer")
    if not _INT32_MIN <= value <= _INT32_MAX:
        raise ValueError(f"field {name!r} is out of the 32-bit range")
    return value


def _to_wire(value: Any, kind: Any, name: str) -> Any:
    if get_origin(kind) is list:
        (item_kind,) = get_args(kind)
        if not isinstance(value, (list, tuple)):
            raise ValueError(f"field {name!r} must be a list")
        return [_to_wire(item, item_kind, name) for item in value]
    if kind is bytes:
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise ValueError(f"field {name!r} must be bytes")
        return base64.b64encode(bytes(value)).decode("ascii")
    if kind is int:
        return _check_int(value, name)
    if kind is bool:
        if not isinstance(value, bool):
            raise ValueError(f"field {name!r} must be a boolean")
        return value
    if not isinstance(value, str):
        raise ValueError(f"field {name!r} must be a string")
    return value


def _from_wire(value: Any, kind: Any, name: str) -> Any:
    if get_origin(kind) is list:
        (item_kind,) = get_args(kind)
        if not isinstance(value, list):
            raise ValueError(f"field {name!r} must be a list")
        return [_from_wire(item, item_kind, name) for item in value]
    if kind is bytes:
        if not isinstance(value, str):
            raise ValueError(f"field {name!r} must be base64 text")
        try:
            return base64.b64decode(value, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"field {name!r} is not valid base64") from exc
    if kind is int:
        return _check_int(value, name)
    if kind is bool:
        if not isinstance(value, bool):
            raise ValueError(f"field {name!r} must be a boolean")
        return value
    if not isinstance(value, str):
        raise ValueError(f"field {name!r} must be a string")
    return value


def encode(message: Any) -> bytes:
    """Serialise a message to its wire form."""
    if not is_dataclass(message) or type(message) not in _MESSAGE_TYPES:
        raise TypeError(f"not a file service message: {type(message).__name__}")
    payload = {
        f.name: _to_wire(getattr(message, f.name), _kind(f.type), f.name)
        for f in fields(message)
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def decode(cls: type[M], data: bytes | str) -> M:
    """Build a message of type ``cls`` from its wire form."""
    if cls not in _MESSAGE_TYPES:
        raise TypeError(f"not a file service message type: {cls!r}")
    if isinstance(data, (bytes, bytearray, memoryview)):
        data = bytes(data)
        if not data:
            return cls()
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValueError("message is not UTF-8 text") from exc
    else:
        text = data
    if not text:
        return cls()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"malformed message: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("message must be a JSON object")
    values = {
        f.name: _from_wire(payload[f.name], _kind(f.type), f.name)
        for f in fields(cls)
        if f.name in payload
    }
    return cls(**values)