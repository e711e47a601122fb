import socket
from contextlib import contextmanager

import pytest

from tinydfs.client import (
    ClientNotificationService,
    download_file,
    progress_bar,
    start_notification_server,
    upload_file,
)
from tinydfs.datanode import CHUNK_SIZE, DataNode, DataNodeConfig
from tinydfs.messages import (
    HandleDownloadFileResponse,
    HandleUploadFileResponse,
    SendNotificationRequest,
    SendNotificationResponse,
)
from tinydfs.rpc import METHODS, FileServiceError, FileServiceStub, connect


class FakeMaster:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def call(self, method, request, metadata=None):
        self.calls.append((method, request, metadata))
        response = self.responses[method]
        if isinstance(response, Exception):
            raise response
        return response


class LocalStub:
    def __init__(self, node, calls):
        self.node = node
        self.calls = calls

    def call(self, method, request, metadata=None):
        self.calls.append((method, request))
        return getattr(self.node, METHODS[method].attribute)(request, None)


def make_node(tmp_path):
    notices = []
    config = DataNodeConfig(ip="10.0.0.5", master_node_port=":7000", client_node_port=":7001",
                            data_node_port=":7002", id=3)
    node = DataNode(config, notifier=lambda request, metadata: notices.append(request), root=tmp_path / "node")
    return node, notices


def make_connector(node, addresses, calls):
    @contextmanager
    def connector(address):
        addresses.append(address)
        yield LocalStub(node, calls)

    return connector


def test_progress_bar_half():
    assert progress_bar(50, 100) == "Uploading: [" + "=" * 25 + " " * 25 + "] 50.00%"


def test_progress_bar_full_is_fifty_wide():
    line = progress_bar(7, 7)
    assert "[" + "=" * 50 + "]" in line
    assert line.endswith("100.00%")


def test_progress_bar_rejects_empty_total():
    with pytest.raises(ValueError):
        progress_bar(0, 0)


def test_upload_stores_file_on_chosen_node(tmp_path):
    node, notices = make_node(tmp_path)
    source = tmp_path / "sub" / "data.txt"
    source.parent.mkdir()
    source.write_bytes(b"hello cluster")
    master = FakeMaster({"HandleUploadFile": HandleUploadFileResponse(port_number=7001, ip_address="10.0.0.5")})
    addresses, calls = [], []

    message = upload_file(master, str(source), connector=make_connector(node, addresses, calls))

    assert message == "Upload complete"
    assert addresses == ["10.0.0.5:7001"]
    assert (node.storage_dir() / "data.txt").read_bytes() == b"hello cluster"
    assert [m for m, _ in calls] == ["BeginUploadFile", "UpdateUploadFile", "EndUploadFile"]
    assert calls[0][1].file_name == "data.txt"
    assert notices[0].file_name == "data.txt"
    assert dict(master.calls[0][2])["client-ip"] == "localhost"


def test_upload_sends_one_update_per_chunk(tmp_path, capsys):
    node, _ = make_node(tmp_path)
    content = bytes(range(256)) * (CHUNK_SIZE // 256) + b"tail"
    source = tmp_path / "big.bin"
    source.write_bytes(content)
    master = FakeMaster({"HandleUploadFile": HandleUploadFileResponse(port_number=7001, ip_address="10.0.0.5")})
    calls = []

    upload_file(master, str(source), connector=make_connector(node, [], calls))

    updates = [r for m, r in calls if m == "UpdateUploadFile"]
    assert len(updates) == 2
    assert b"".join(r.file_content for r in updates) == content
    assert (node.storage_dir() / "big.bin").read_bytes() == content
    assert "100.00%" in capsys.readouterr().out


def test_upload_propagates_master_error(tmp_path):
    source = tmp_path / "a.txt"
    source.write_bytes(b"x")
    master = FakeMaster({"HandleUploadFile": FileServiceError("no aliveMachines")})
    addresses = []
    with pytest.raises(FileServiceError, match="no aliveMachines"):
        upload_file(master, str(source), connector=make_connector(None, addresses, []))
    assert addresses == []


def test_upload_missing_file_raises(tmp_path):
    master = FakeMaster({})
    with pytest.raises(FileNotFoundError):
        upload_file(master, str(tmp_path / "missing.txt"), connector=make_connector(None, [], []))
    assert master.calls == []


def test_download_saves_file(tmp_path):
    node, _ = make_node(tmp_path)
    node.storage_dir().mkdir(parents=True)
    (node.storage_dir() / "report").write_bytes(b"stored bytes")
    master = FakeMaster({"HandleDownloadFile": HandleDownloadFileResponse(ip_address=["10.0.0.5"], port_numbers=[7001])})
    addresses = []
    out_dir = tmp_path / "downloads"

    saved = download_file(master, "report", connector=make_connector(node, addresses, []), download_dir=out_dir)

    assert saved == out_dir / "report"
    assert saved.read_bytes() == b"stored bytes"
    assert addresses == ["10.0.0.5:7001"]
    assert master.calls[0][1].file_name == "report"


def test_download_without_nodes_raises_after_creating_dir(tmp_path):
    master = FakeMaster({"HandleDownloadFile": HandleDownloadFileResponse()})
    out_dir = tmp_path / "downloads"
    with pytest.raises(FileServiceError, match="No available DataNodes"):
        download_file(master, "report", connector=make_connector(None, [], []), download_dir=out_dir)
    assert out_dir.is_dir()


def test_download_unknown_file_propagates(tmp_path):
    master = FakeMaster({"HandleDownloadFile": FileServiceError("No such filename exist")})
    with pytest.raises(FileServiceError, match="No such filename exist"):
        download_file(master, "nothing", connector=make_connector(None, [], []), download_dir=tmp_path / "d")


def test_download_missing_on_node_raises(tmp_path):
    node, _ = make_node(tmp_path)
    master = FakeMaster({"HandleDownloadFile": HandleDownloadFileResponse(ip_address=["10.0.0.5"], port_numbers=[7001])})
    with pytest.raises(FileServiceError, match="ReadFile fail"):
        download_file(master, "gone", connector=make_connector(node, [], []), download_dir=tmp_path / "d")


def test_notification_service_records_and_prints(capsys):
    service = ClientNotificationService()
    response = service.send_notification(SendNotificationRequest(message="File Upload Finish"), None)
    assert response == SendNotificationResponse()
    assert service.messages == ["File Upload Finish"]
    assert "File Upload Finish" in capsys.readouterr().out


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.bind(("127.0.0.1", 0))
        return probe.getsockname()[1]


def test_notification_server_answers_over_grpc(capsys):
    address = f"127.0.0.1:{_free_port()}"
    server = start_notification_server(address)
    try:
        with connect(address) as channel:
            response = FileServiceStub(channel).call(
                "SendNotification", SendNotificationRequest(message="File Upload Finish")
            )
        assert response == SendNotificationResponse()
        assert "File Upload Finish" in capsys.readouterr().out
    finally:
        server.stop(None)