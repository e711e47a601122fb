"""The interactive client: uploads files to and downloads files from the cluster."""

from __future__ import annotations

import argparse
import logging
import random
import sys
from collections.abc import Callable, Iterable, Iterator
from concurrent import futures
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import Any

import grpc

from tinydfs.datanode import CHUNK_SIZE, iter_chunks
from tinydfs.messages import (
    FileDownloadRequest,
    FileUploadRequest,
    HandleDownloadFileRequest,
    HandleUploadFileRequest,
    SendNotificationResponse,
)
from tinydfs.rpc import FileServiceError, FileServiceStub, add_file_service, connect

MASTER_ADDRESS = "localhost:50060"
CLIENT_ADDRESS = "localhost:12345"
DOWNLOAD_DIR = "./downloads"
MAX_MESSAGE_SIZE = 1024 * 1024 * 100
CLIENT_METADATA: tuple[tuple[str, str], ...] = (("client-ip", "localhost"), ("client-port", "12345"))
BAR_WIDTH = 50

_log = logging.getLogger(__name__)

Metadata = Iterable[tuple[str, str]]
Connector = Callable[[str], AbstractContextManager[Any]]


class ClientNotificationService:
    """Receives the master's notifications that an upload has finished."""

    def __init__(self) -> None:
        self.messages: list[str] = []

    def send_notification(self, request: Any, context: Any) -> SendNotificationResponse:
        """Show a notification pushed by the master."""
        self.messages.append(request.message)
        print(f"Notification from master: {request.message}")
        return SendNotificationResponse()


def _bind_address(address: str) -> str:
    return f"[::]{address}" if address.startswith(":") else address


def start_notification_server(address: str = CLIENT_ADDRESS) -> grpc.Server:
    """Start the client's notification server on ``address`` and return it."""
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=4))
    add_file_service(server, ClientNotificationService())
    try:
        bound = server.add_insecure_port(_bind_address(address))
    except RuntimeError:
        bound = 0
    if bound == 0:
        raise OSError(f"Failed to initialize client listener: {address}")
    server.start()
    _log.info("Client notification server running on %s", address)
    return server


def progress_bar(done: int, total: int) -> str:
    """A fifty-column progress line for ``done`` of ``total`` bytes."""
    if total <= 0:
        raise ValueError("total must be positive")
    progress = done / total * 100
    bar = "=" * int(progress / 2)
    return f"Uploading: [{bar:<{BAR_WIDTH}}] {progress:.2f}%"


@contextmanager
def _open_data_node(address: str) -> Iterator[FileServiceStub]:
    with connect(address, MAX_MESSAGE_SIZE) as channel:
        yield FileServiceStub(channel)


def upload_file(
    master: Any,
    file_path: str,
    metadata: Metadata | None = CLIENT_METADATA,
    connector: Connector | None = None,
) -> str:
    """Upload a local file in chunks to the data node the master picks; return its final reply."""
    open_node = connector or _open_data_node
    file_name = file_path.split("/")[-1]
    data = Path(file_path).read_bytes()
    total = len(data)

    target = master.call("HandleUploadFile", HandleUploadFileRequest(), metadata)
    address = f"{target.ip_address}:{target.port_number}"
    print("Uploading to:", address)

    with open_node(address) as node:
        node.call("BeginUploadFile", FileUploadRequest(file_name=file_name), metadata)
        print(f"Started upload for {file_name} ({total} bytes)")

        sent = 0
        for chunk in iter_chunks(data, CHUNK_SIZE):
            node.call("UpdateUploadFile", FileUploadRequest(file_name=file_name, file_content=chunk), metadata)
            sent += len(chunk)
            print("\r" + progress_bar(sent, total), end="", flush=True)
        print("\nUpload complete. Finalizing upload session...")

        response = node.call("EndUploadFile", FileUploadRequest(file_name=file_name), metadata)
    print("Upload response:", response.message)
    return response.message


def download_file(
    master: Any,
    file_name: str,
    metadata: Metadata | None = CLIENT_METADATA,
    connector: Connector | None = None,
    download_dir: str | Path = DOWNLOAD_DIR,
) -> Path:
    """Fetch a file from a random data node holding it; return where it was saved."""
    open_node = connector or _open_data_node
    locations = master.call("HandleDownloadFile", HandleDownloadFileRequest(file_name=file_name), metadata)

    directory = Path(download_dir)
    directory.mkdir(exist_ok=True)

    if not locations.ip_address:
        raise FileServiceError("No available DataNodes for download")
    if len(locations.port_numbers) < len(locations.ip_address):
        raise ValueError("download locations lack port numbers")

    index = random.randrange(len(locations.ip_address))
    address = f"{locations.ip_address[index]}:{locations.port_numbers[index]}"
    print("Downloading from:", address)

    with open_node(address) as node:
        response = node.call("DownloadFile", FileDownloadRequest(file_name=file_name), metadata)

    target = directory / file_name
    target.write_bytes(response.file_content)
    print(f"Download successful. File saved at: {target}")
    return target


def _read_token() -> str:
    try:
        words = input().split()
    except EOFError:
        return ""
    return words[0] if words else ""


def main(argv: list[str] | None = None) -> int:
    """Run the interactive client until the user exits."""
    parser = argparse.ArgumentParser(prog="tinydfs-client", description="Upload and download files.")
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    try:
        server = start_notification_server(CLIENT_ADDRESS)
    except OSError as exc:
        print(exc, file=sys.stderr)
        return 1

    try:
        with connect(MASTER_ADDRESS) as channel:
            master = FileServiceStub(channel)
            while True:
                print("Please enter u to Upload, d to Download, e to Exit")
                try:
                    answer = input()
                except EOFError:
                    print("Failed to read input", file=sys.stderr)
                    return 1
                command = answer.strip().lower()
                try:
                    if command == "u":
                        print("Enter file path: ", end="", flush=True)
                        upload_file(master, _read_token())
                    elif command == "d":
                        print("Enter file name (without extension): ", end="", flush=True)
                        download_file(master, _read_token())
                    elif command == "e":
                        print("Shutting down client...")
                        return 0
                    else:
                        print("Invalid answer. Enter 'u', 'd', or 'e'.")
                except (FileServiceError, OSError, ValueError) as exc:
                    print(exc, file=sys.stderr)
                    return 1
    finally:
        server.stop(None)