"""The master node: file placement, data node liveness and replication."""

from __future__ import annotations

import argparse
import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from concurrent import futures
from dataclasses import dataclass, field
from typing import Any

import grpc

from tinydfs.messages import (
    HandleDownloadFileResponse,
    HandleUploadFileResponse,
    KeepAliveResponse,
    NotifyUploadedResponse,
    ReplicateRequest,
    SendNotificationRequest,
)
from tinydfs.rpc import FileServiceError, FileServiceStub, add_file_service, connect, metadata_value, parse_port

PORT_CLIENT = ":50060"
PORT_DATA_NODE = ":50061"
KEEP_ALIVE_TIMEOUT = 2.0
REPLICATION_INTERVAL = 10.0
TARGET_REPLICAS = 3

_log = logging.getLogger(__name__)

Dispatcher = Callable[[str, str, Any], None]


@dataclass
class FileRecord:
    """Where the copies of one file are stored."""

    file_name: str
    file_paths: list[str] = field(default_factory=list)
    data_nodes: list[int] = field(default_factory=list)


@dataclass
class MachineRecord:
    """A registered data node and the ports it listens on."""

    ip_address: str
    master_node_port: int
    client_node_port: int
    data_node_port: int
    liveness: bool = True

    @property
    def master_address(self) -> str:
        return f"{self.ip_address}:{self.master_node_port}"


def _go_list(values: Iterable[Any]) -> str:
    return "[" + " ".join(map(str, values)) + "]"


def _dispatch_in_background(address: str, method: str, request: Any) -> None:
    def deliver() -> None:
        try:
            with connect(address) as channel:
                FileServiceStub(channel).call(method, request)
        except FileServiceError as exc:
            _log.warning("%s to %s failed: %s", method, address, exc.details)

    threading.Thread(target=deliver, daemon=True).start()


class MasterNode:
    """Keeps the file and machine records and serves the master's RPCs."""

    def __init__(self, dispatcher: Dispatcher | None = None) -> None:
        self.file_records: dict[str, FileRecord] = {}
        self.machine_records: list[MachineRecord] = []
        self.last_keep_alive: dict[int, float] = {}
        self._dispatcher = dispatcher or _dispatch_in_background
        self._lock = threading.RLock()
        self._rng = random.Random()

    def format_machine_records(self) -> str:
        """A readable listing of every registered data node."""
        with self._lock:
            lines = ["Machine Records:"]
            for index, m in enumerate(self.machine_records):
                ports = _go_list((m.master_node_port, m.client_node_port, m.data_node_port))
                lines += [f"Machine {index}:", f"  IP: {m.ip_address}",
                          f"  Alive: {str(m.liveness).lower()}", f"  Ports: {ports}"]
        return "\n".join(lines) + "\n"

    def format_file_records(self) -> str:
        """A readable listing of every known file and its copies."""
        with self._lock:
            lines = ["File Records:"]
            for name, record in self.file_records.items():
                lines += [f"File: {name}", f"  Paths: {_go_list(record.file_paths)}",
                          f"  Nodes: {_go_list(record.data_nodes)}"]
        return "\n".join(lines) + "\n"

    def _machine(self, node_id: int) -> MachineRecord:
        if not 0 <= node_id < len(self.machine_records):
            raise ValueError(f"unknown data node: {node_id}")
        return self.machine_records[node_id]

    def handle_upload_file(self, request: Any, context: Any) -> HandleUploadFileResponse:
        """Choose a random live data node for a client upload."""
        with self._lock:
            alive = [m for m in self.machine_records if m.liveness]
            if not alive:
                raise FileServiceError("no aliveMachines")
            chosen = self._rng.choice(alive)
            return HandleUploadFileResponse(port_number=chosen.client_node_port, ip_address=chosen.ip_address)

    def handle_download_file(self, request: Any, context: Any) -> HandleDownloadFileResponse:
        """List the live data nodes that hold the requested file."""
        with self._lock:
            record = self.file_records.get(request.file_name)
            if record is None:
                raise FileServiceError("No such filename exist")
            live = [m for m in map(self._machine, record.data_nodes) if m.liveness]
            return HandleDownloadFileResponse(
                ip_address=[m.ip_address for m in live],
                port_numbers=[m.client_node_port for m in live],
            )

    def notify_uploaded(self, request: Any, context: Any) -> NotifyUploadedResponse:
        """Record a stored copy; for a new file, notify the client and start replication."""
        outgoing: list[tuple[str, str, Any]] = []
        with self._lock:
            record = self.file_records.get(request.file_name)
            if record is not None:
                record.data_nodes.append(request.data_node)
                record.file_paths.append(request.file_path)
                print(self.format_file_records(), end="")
                return NotifyUploadedResponse()

            self.file_records[request.file_name] = FileRecord(
                request.file_name, [request.file_path], [request.data_node]
            )
            ips = [v for v in metadata_value(context, "client-ip").split(",") if v]
            ports = [v for v in metadata_value(context, "client-port").split(",") if v]
            print(f"Client IP: {_go_list(ips)} | Port: {_go_list(ports)}")
            if ips and ports:
                message = SendNotificationRequest(message="File Upload Finish")
                outgoing.append((f"{ips[0]}:{ports[0]}", "SendNotification", message))
            else:
                _log.warning("No client address in the upload notification metadata")

            replicate = self.replication_request(request.file_name, request.file_path, request.data_node)
            source = self._machine(request.data_node)
            if source.liveness:
                outgoing.append((source.master_address, "Replicate", replicate))
            print(self.format_file_records(), end="")

        for address, method, message in outgoing:
            self._dispatcher(address, method, message)
        return NotifyUploadedResponse()

    def replication_request(self, file_name: str, file_path: str, source_id: int) -> ReplicateRequest:
        """The instruction for ``source_id`` to copy a file to the next two live nodes lacking it."""
        with self._lock:
            count = len(self.machine_records)
            if count == 0:
                raise ValueError("no data nodes registered")
            self._machine(source_id)
            record = self.file_records.get(file_name)
            holders = record.data_nodes if record is not None else []
            request = ReplicateRequest(file_name=file_name, file_path=file_path)
            for step in (1, 2):
                target_id = (source_id + step) % count
                target = self.machine_records[target_id]
                if not target.liveness:
                    _log.info("machine %s not alive.", target.ip_address)
                elif target_id not in holders:
                    request.ip_addresses.append(target.ip_address)
                    request.port_numbers.append(target.data_node_port)
                    request.ids.append(target_id)
            return request

    def schedule_replications(self) -> list[tuple[str, ReplicateRequest]]:
        """One replication pass: top up every file with fewer than three live copies."""
        outgoing: list[tuple[str, ReplicateRequest]] = []
        with self._lock:
            for record in self.file_records.values():
                live = [i for i, node in enumerate(record.data_nodes) if self._machine(node).liveness]
                if not 0 < len(live) < TARGET_REPLICAS:
                    continue
                index = self._rng.choice(live)
                source_id = record.data_nodes[index]
                request = self.replication_request(record.file_name, record.file_paths[index], source_id)
                outgoing.append((self.machine_records[source_id].master_address, request))
        for address, request in outgoing:
            self._dispatcher(address, "Replicate", request)
        return outgoing

    def refresh_liveness(self, now: float | None = None) -> None:
        """Mark each node alive exactly when its last heartbeat is recent enough."""
        moment = time.monotonic() if now is None else now
        with self._lock:
            for node_id, last in self.last_keep_alive.items():
                self.machine_records[node_id].liveness = moment - last < KEEP_ALIVE_TIMEOUT

    def add_data_node_machine(self, ip_address: str, port_numbers: list[str]) -> int:
        """Register a data node from its master, client and peer ports; return its id."""
        if len(port_numbers) < 3:
            raise ValueError("a data node needs master, client and data node ports")
        master_port, client_port, data_port = (parse_port(p) for p in port_numbers[:3])
        with self._lock:
            self.machine_records.append(MachineRecord(ip_address, master_port, client_port, data_port))
            return len(self.machine_records) - 1

    def keep_alive(self, request: Any, context: Any) -> KeepAliveResponse:
        """Take a heartbeat, registering the sender if it is new."""
        if not request.port_number:
            raise ValueError("heartbeat carries no ports")
        address = request.data_node_ip + request.port_number[0]
        with self._lock:
            node_id = next(
                (i for i, m in enumerate(self.machine_records) if m.master_address == address), None
            )
            if node_id is None:
                node_id = self.add_data_node_machine(request.data_node_ip, request.port_number)
            self.last_keep_alive[node_id] = time.monotonic()
        return KeepAliveResponse()

    def run_background(self, stop_event: threading.Event) -> list[threading.Thread]:
        """Start the liveness monitor and replication scheduler until ``stop_event`` is set."""

        def monitor() -> None:
            while not stop_event.wait(KEEP_ALIVE_TIMEOUT):
                self.refresh_liveness()

        def scheduler() -> None:
            while not stop_event.wait(REPLICATION_INTERVAL):
                try:
                    self.schedule_replications()
                except ValueError as exc:
                    _log.warning("replication pass failed: %s", exc)

        threads = [threading.Thread(target=t, daemon=True) for t in (monitor, scheduler)]
        for thread in threads:
            thread.start()
        return threads


def serve(master: MasterNode, addresses: Iterable[str] = (PORT_CLIENT, PORT_DATA_NODE)) -> grpc.Server:
    """Start a gRPC server for ``master`` listening on every address."""
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=16))
    add_file_service(server, master)
    for address in addresses:
        bind = f"[::]{address}" if address.startswith(":") else address
        if server.add_insecure_port(bind) == 0:
            raise OSError(f"tcp listen fail: {address}")
        _log.info("listening on %s", address)
    server.start()
    return server


def main(argv: list[str] | None = None) -> int:
    """Run the master node until interrupted."""
    argparse.ArgumentParser(prog="tinydfs-master", description="Run the master node.").parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    master = MasterNode()
    stop_event = threading.Event()
    master.run_background(stop_event)
    server = serve(master)
    try:
        server.wait_for_termination()
    except KeyboardInterrupt:
        pass
    finally:
        stop_event.set()
        server.stop(None)
    return 0