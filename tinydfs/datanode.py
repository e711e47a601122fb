"""The data node: stores uploaded files, serves downloads and replicates copies."""

from __future__ import annotations

import argparse
import ipaddress
import json
import logging
import socket
import sys
import threading
from collections.abc import Callable, Iterator
from concurrent import futures
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO

import grpc

from tinydfs.messages import (
    FileDownloadResponse,
    FileUploadRequest,
    FileUploadResponse,
    KeepAliveRequest,
    NotifyUploadedRequest,
    ReplicateResponse,
)
from tinydfs.rpc import FileServiceError, FileServiceStub, add_file_service, connect, metadata_value

MASTER_ADDRESS = "localhost:50061"
MAX_GRPC_SIZE = 1024 * 1024 * 100
CHUNK_SIZE = 1024 * 1024
HEARTBEAT_INTERVAL = 1.0

_log = logging.getLogger(__name__)

Metadata = tuple[tuple[str, str], ...]
Notifier = Callable[[NotifyUploadedRequest, Metadata], None]
Connector = Callable[[str], AbstractContextManager[Any]]

_CONFIG_KEYS = {
    "ip": "ip",
    "masternodeport": "master_node_port",
    "clientnodeport": "client_node_port",
    "datanodeport": "data_node_port",
    "id": "id",
}


@dataclass
class DataNodeConfig:
    """Address, listen ports and id of a data node."""

    ip: str = ""
    master_node_port: str = ""
    client_node_port: str = ""
    data_node_port: str = ""
    id: int = 0

    @property
    def ports(self) -> list[str]:
        return [self.master_node_port, self.client_node_port, self.data_node_port]


def load_config(path: str | Path, ip: str = "") -> DataNodeConfig:
    """Read a JSON data node configuration; keys match case-insensitively."""
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"couldn't parse config file: {exc}") from exc
    config = DataNodeConfig(ip=ip)
    if payload is None:
        return config
    if not isinstance(payload, dict):
        raise ValueError("couldn't parse config file: not a JSON object")
    for key, value in payload.items():
        attribute = _CONFIG_KEYS.get(key.lower())
        if attribute is None or value is None:
            continue
        if attribute == "id":
            if not isinstance(value, int) or isinstance(value, bool) or not -(2**31) <= value < 2**31:
                raise ValueError(f"couldn't parse config file: {key} must be a 32-bit integer")
        elif not isinstance(value, str):
            raise ValueError(f"couldn't parse config file: {key} must be a string")
        setattr(config, attribute, value)
    return config


def iter_chunks(data: bytes, size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Split ``data`` into consecutive pieces of at most ``size`` bytes."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for offset in range(0, len(data), size):
        yield bytes(data[offset : offset + size])


def _notify_master_in_background(request: NotifyUploadedRequest, metadata: Metadata) -> None:
    def deliver() -> None:
        try:
            with connect(MASTER_ADDRESS) as channel:
                FileServiceStub(channel).call("NotifyUploaded", request, metadata)
        except FileServiceError as exc:
            _log.warning("Master notification failed: %s", exc.details)

    threading.Thread(target=deliver, daemon=True).start()


@contextmanager
def _open_stub(address: str) -> Iterator[FileServiceStub]:
    with connect(address) as channel:
        yield FileServiceStub(channel)


class DataNode:
    """Serves uploads, downloads and replication for one storage directory."""

    def __init__(
        self,
        config: DataNodeConfig,
        notifier: Notifier | None = None,
        connector: Connector | None = None,
        root: str | Path | None = None,
    ) -> None:
        self.config = config
        self.heartbeat_interval = HEARTBEAT_INTERVAL
        self._notifier = notifier or _notify_master_in_background
        self._connector = connector or _open_stub
        self._root = Path(root) if root is not None else Path(".")
        self._open_files: dict[str, BinaryIO] = {}
        self._lock = threading.Lock()

    def storage_dir(self) -> Path:
        """The directory this node keeps its files in."""
        port = self.config.client_node_port
        if not port:
            raise ValueError("client port is not configured")
        return self._root / f"uploaded_{self.config.ip}_{port[1:]}"

    def _create(self, file_name: str) -> tuple[Path, BinaryIO]:
        directory = self.storage_dir()
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FileServiceError(f"error creating upload dir: {exc}") from exc
        path = directory / file_name
        try:
            return path, path.open("wb")
        except OSError as exc:
            raise FileServiceError(f"error creating file: {exc}") from exc

    def _notify_master(self, file_name: str, path: Path, context: Any) -> None:
        metadata = (
            ("client-ip", metadata_value(context, "client-ip")),
            ("client-port", metadata_value(context, "client-port")),
        )
        request = NotifyUploadedRequest(file_name=file_name, data_node=self.config.id, file_path=str(path))
        self._notifier(request, metadata)

    @staticmethod
    def _write(handle: BinaryIO, content: bytes) -> None:
        try:
            handle.write(content)
        except OSError as exc:
            raise FileServiceError(f"error writing file content: {exc}") from exc

    def upload_file(self, request: FileUploadRequest, context: Any) -> FileUploadResponse:
        """Store a whole file in one call and report it to the master."""
        _log.info("Received upload request for: %s", request.file_name)
        path, handle = self._create(request.file_name)
        with handle:
            self._write(handle, request.file_content)
        _log.info("File uploaded success at %s", path)
        self._notify_master(request.file_name, path, context)
        return FileUploadResponse(message="Upload successful")

    def begin_upload_file(self, request: FileUploadRequest, context: Any) -> FileUploadResponse:
        """Open a file for a chunked upload."""
        path, handle = self._create(request.file_name)
        with self._lock:
            previous = self._open_files.pop(request.file_name, None)
            self._open_files[request.file_name] = handle
        if previous is not None:
            previous.close()
        _log.info("File created at: %s", path)
        return FileUploadResponse(message="Upload initiated")

    def update_upload_file(self, request: FileUploadRequest, context: Any) -> FileUploadResponse:
        """Append a chunk to a file opened by ``begin_upload_file``."""
        with self._lock:
            handle = self._open_files.get(request.file_name)
            if handle is None:
                raise FileServiceError(f"file not found in active uploads: {request.file_name}")
            self._write(handle, request.file_content)
        return FileUploadResponse(message="Chunk received")

    def end_upload_file(self, request: FileUploadRequest, context: Any) -> FileUploadResponse:
        """Close a chunked upload and report the file to the master."""
        with self._lock:
            handle = self._open_files.pop(request.file_name, None)
        if handle is None:
            raise FileServiceError(f"file not found in active uploads: {request.file_name}")
        handle.close()
        _log.info("Upload finished for %s", request.file_name)
        self._notify_master(request.file_name, self.storage_dir() / request.file_name, context)
        return FileUploadResponse(message="Upload complete")

    def download_file(self, request: Any, context: Any) -> FileDownloadResponse:
        """Return the content of a stored file."""
        _log.info("FileDownloadRequest %s", request.file_name)
        try:
            content = (self.storage_dir() / request.file_name).read_bytes()
        except OSError as exc:
            raise FileServiceError(f"ReadFile fail {exc}") from exc
        return FileDownloadResponse(file_content=content)

    def begin_download_file(self, request: Any, context: Any) -> FileDownloadResponse:
        """Return the content of a stored file."""
        return self.download_file(request, context)

    def update_download_file(self, request: Any, context: Any) -> FileDownloadResponse:
        """Return the content of a stored file."""
        return self.download_file(request, context)

    def end_download_file(self, request: Any, context: Any) -> FileDownloadResponse:
        """Return the content of a stored file."""
        return self.download_file(request, context)

    def replicate(self, request: Any, context: Any) -> ReplicateResponse:
        """Copy a stored file to every listed data node, chunk by chunk."""
        _log.info("Replicating file: %s to %d node(s)", request.file_name, len(request.ip_addresses))
        try:
            content = Path(request.file_path).read_bytes()
        except OSError as exc:
            raise FileServiceError(f"replication failed, cannot read file: {exc}") from exc
        if len(request.port_numbers) < len(request.ip_addresses):
            raise ValueError("replication targets lack port numbers")
        for ip, port in zip(request.ip_addresses, request.port_numbers):
            address = f"{ip}:{port}"
            try:
                with self._connector(address) as stub:
                    self._send_copy(stub, request.file_name, content)
            except (FileServiceError, OSError) as exc:
                _log.warning("Replication to %s failed: %s", address, exc)
        return ReplicateResponse()

    @staticmethod
    def _send_copy(stub: Any, file_name: str, content: bytes) -> None:
        stub.call("BeginUploadFile", FileUploadRequest(file_name=file_name))
        for chunk in iter_chunks(content):
            stub.call("UpdateUploadFile", FileUploadRequest(file_name=file_name, file_content=chunk))
        stub.call("EndUploadFile", FileUploadRequest(file_name=file_name))

    def keep_alive_request(self) -> KeepAliveRequest:
        """The heartbeat this node sends to the master."""
        return KeepAliveRequest(data_node_ip=self.config.ip, port_number=self.config.ports, is_alive=True)

    def send_heartbeats(self, stub: Any, stop_event: threading.Event) -> int:
        """Send a heartbeat every interval until ``stop_event``; return how many got through."""
        delivered = 0
        while not stop_event.wait(self.heartbeat_interval):
            try:
                stub.call("KeepAlive", self.keep_alive_request())
                delivered += 1
            except FileServiceError as exc:
                _log.warning("Cannot Send KeepAlive %s", exc.details)
        return delivered


def get_machine_ip() -> str:
    """The first non-loopback IPv4 address of this machine."""
    candidates: list[str] = []
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
            probe.connect(("192.0.2.1", 9))
            candidates.append(probe.getsockname()[0])
    except OSError:
        pass
    try:
        candidates.extend(socket.gethostbyname_ex(socket.gethostname())[2])
    except OSError:
        pass
    for address in candidates:
        try:
            ip = ipaddress.ip_address(address)
        except ValueError:
            continue
        if ip.version == 4 and not ip.is_loopback and not ip.is_unspecified:
            return address
    raise OSError("no suitable IP address found")


def main(argv: list[str] | None = None) -> int:
    """Run a data node from its configuration file until interrupted."""
    parser = argparse.ArgumentParser(prog="tinydfs-datanode", description="Run a data node.")
    parser.add_argument("config", help="path of the data node's JSON configuration file")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    try:
        ip = get_machine_ip()
    except OSError as exc:
        print("Error in extracting IP of machine", exc)
        ip = ""
    try:
        config = load_config(args.config, ip)
    except (OSError, ValueError) as exc:
        print(f"couldn't load config file: {exc}", file=sys.stderr)
        return 1

    node = DataNode(config)
    server = grpc.server(
        futures.ThreadPoolExecutor(max_workers=16),
        options=[("grpc.max_receive_message_length", MAX_GRPC_SIZE)],
    )
    add_file_service(server, node)
    for port in (config.client_node_port, config.data_node_port, config.master_node_port):
        try:
            bound = server.add_insecure_port(f"[::]{port}" if port.startswith(":") else port)
        except RuntimeError:
            bound = 0
        if bound == 0:
            print(f"tcp listen fail {port}", file=sys.stderr)
            return 1
    server.start()

    stop_event = threading.Event()
    with connect(MASTER_ADDRESS) as channel:
        threading.Thread(
            target=node.send_heartbeats, args=(FileServiceStub(channel), stop_event), daemon=True
        ).start()
        _log.info("DataNode running on ports %s", ", ".join(config.ports))
        try:
            server.wait_for_termination()
        except KeyboardInterrupt:
            pass
        finally:
            stop_event.set()
            server.stop(None)
    return 0