"""The file service over gRPC: method table, client stub and server wiring."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from functools import partial
from typing import Any

import grpc

from tinydfs.messages import (
    FileDownloadRequest,
    FileDownloadResponse,
    FileUploadRequest,
    FileUploadResponse,
    HandleDownloadFileRequest,
    HandleDownloadFileResponse,
    HandleUploadFileRequest,
    HandleUploadFileResponse,
    KeepAliveRequest,
    KeepAliveResponse,
    NotifyUploadedRequest,
    NotifyUploadedResponse,
    ReplicateRequest,
    ReplicateResponse,
    SendNotificationRequest,
    SendNotificationResponse,
    decode,
    encode,
)

SERVICE_NAME = "tinydfs.FileService"

_log = logging.getLogger(__name__)
_PORT_PATTERN = re.compile(r":([+-]?[0-9]+)")


@dataclass(frozen=True)
class RpcMethod:
    """One method of the file service."""

    name: str
    attribute: str
    request_type: type
    response_type: type


METHODS: dict[str, RpcMethod] = {
    m.name: m
    for m in (
        RpcMethod("HandleUploadFile", "handle_upload_file", HandleUploadFileRequest, HandleUploadFileResponse),
        RpcMethod(
            "HandleDownloadFile", "handle_download_file", HandleDownloadFileRequest, HandleDownloadFileResponse
        ),
        RpcMethod("NotifyUploaded", "notify_uploaded", NotifyUploadedRequest, NotifyUploadedResponse),
        RpcMethod("Replicate", "replicate", ReplicateRequest, ReplicateResponse),
        RpcMethod("KeepAlive", "keep_alive", KeepAliveRequest, KeepAliveResponse),
        RpcMethod("UploadFile", "upload_file", FileUploadRequest, FileUploadResponse),
        RpcMethod("BeginUploadFile", "begin_upload_file", FileUploadRequest, FileUploadResponse),
        RpcMethod("UpdateUploadFile", "update_upload_file", FileUploadRequest, FileUploadResponse),
        RpcMethod("EndUploadFile", "end_upload_file", FileUploadRequest, FileUploadResponse),
        RpcMethod("DownloadFile", "download_file", FileDownloadRequest, FileDownloadResponse),
        RpcMethod("BeginDownloadFile", "begin_download_file", FileDownloadRequest, FileDownloadResponse),
        RpcMethod("UpdateDownloadFile", "update_download_file", FileDownloadRequest, FileDownloadResponse),
        RpcMethod("EndDownloadFile", "end_download_file", FileDownloadRequest, FileDownloadResponse),
        RpcMethod("SendNotification", "send_notification", SendNotificationRequest, SendNotificationResponse),
    )
}


class FileServiceError(Exception):
    """A file service call failed, locally or on the remote side."""

    def __init__(self, details: str, code: grpc.StatusCode | None = None) -> None:
        super().__init__(details)
        self.details = details
        self.code = code


def _metadata_pairs(metadata: Any) -> tuple[tuple[str, str], ...] | None:
    if metadata is None:
        return None
    items = metadata.items() if isinstance(metadata, Mapping) else metadata
    pairs = tuple((str(key).lower(), str(value)) for key, value in items)
    return pairs or None


class FileServiceStub:
    """Client side of the file service over a gRPC channel."""

    def __init__(self, channel: grpc.Channel) -> None:
        self._calls = {
            name: channel.unary_unary(
                f"/{SERVICE_NAME}/{name}",
                request_serializer=encode,
                response_deserializer=partial(decode, method.response_type),
            )
            for name, method in METHODS.items()
        }

    def call(self, method: str, request: Any, metadata: Mapping[str, str] | Iterable[tuple[str, str]] | None = None):
        """Invoke ``method`` with ``request`` and return its response."""
        spec = METHODS.get(method)
        if spec is None:
            raise ValueError(f"unknown file service method: {method}")
        if not isinstance(request, spec.request_type):
            raise TypeError(f"{method} takes {spec.request_type.__name__}, not {type(request).__name__}")
        try:
            return self._calls[method](request, metadata=_metadata_pairs(metadata))
        except grpc.RpcError as exc:
            details = exc.details() if hasattr(exc, "details") else None
            code = exc.code() if hasattr(exc, "code") else None
            raise FileServiceError(details or str(exc), code) from exc


def _behaviour(handler, method_name: str):
    def run(request, context):
        try:
            return handler(request, context)
        except FileServiceError as exc:
            _log.warning("%s failed: %s", method_name, exc.details)
            context.abort(exc.code or grpc.StatusCode.UNKNOWN, exc.details)
        except Exception as exc:  # every handler failure becomes an RPC error
            _log.warning("%s failed: %s", method_name, exc)
            context.abort(grpc.StatusCode.UNKNOWN, str(exc))

    return run


def add_file_service(server: grpc.Server, servicer: Any) -> None:
    """Register the methods ``servicer`` implements; the rest stay unimplemented."""
    handlers = {
        name: grpc.unary_unary_rpc_method_handler(
            _behaviour(getattr(servicer, method.attribute), name),
            request_deserializer=partial(decode, method.request_type),
            response_serializer=encode,
        )
        for name, method in METHODS.items()
        if callable(getattr(servicer, method.attribute, None))
    }
    server.add_generic_rpc_handlers((grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),))


def connect(address: str, max_message_size: int | None = None) -> grpc.Channel:
    """Open an insecure channel to ``address``."""
    options = []
    if max_message_size is not None:
        options = [
            ("grpc.max_receive_message_length", max_message_size),
            ("grpc.max_send_message_length", max_message_size),
        ]
    return grpc.insecure_channel(address, options=options)


def metadata_value(context: Any, key: str) -> str:
    """All values of metadata ``key`` on an incoming call, joined by commas."""
    if context is None:
        return ""
    metadata = context.invocation_metadata() or ()
    wanted = key.lower()
    return ",".join(str(value) for name, value in metadata if name.lower() == wanted)


def parse_port(port: str) -> int:
    """The number in a listen address of the form ``:<port>``."""
    match = _PORT_PATTERN.fullmatch(port)
    if match is None:
        raise ValueError(f"couldn't extract port number: {port!r}")
    return int(match.group(1))