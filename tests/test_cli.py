import json
from argparse import Namespace
from pathlib import Path
from typing import Any

import httpx
import pytest

from tibbo_barcode.cli import (
    CliError,
    ClientConfig,
    _build_parser,
    _cmd_devices_remove,
    _cmd_test_print,
    main,
)


def _client(captured: dict, status: int = 200, response_json: Any = None, content: bytes = b"") -> httpx.Client:
    def _handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["params"] = dict(request.url.params)
        if content:
            return httpx.Response(status, content=content, headers={"content-type": "application/pdf"})
        return httpx.Response(status, json=response_json if response_json is not None else {})

    return httpx.Client(transport=httpx.MockTransport(_handler), base_url="http://test")


CONFIG = ClientConfig(server_url="http://test", output="json")


def test_remove_by_mac_sends_query(capsys) -> None:
    captured: dict = {}
    args = Namespace(mac="10.0.0.1", raw_id=None, all=False)
    reply = {"success": True, "message": "Removed device with mac '10.0.0.1' from database"}

    with _client(captured, response_json=reply) as client:
        _cmd_devices_remove(CONFIG, client, args)

    assert captured["params"] == {"mac": "10.0.0.1"}
    assert json.loads(capsys.readouterr().out) == reply


def test_remove_all_sends_no_query() -> None:
    captured: dict = {}
    args = Namespace(mac=None, raw_id=None, all=True)

    with _client(captured, response_json={"success": True, "message": "Removed all devices from database"}) as client:
        _cmd_devices_remove(CONFIG, client, args)

    assert captured["params"] == {}
    assert captured["url"] == "http://test/remove"


def test_remove_unknown_device_is_an_error() -> None:
    args = Namespace(mac=None, raw_id="[001.002.003]", all=False)

    with _client({}, response_json={"success": False}) as client:
        with pytest.raises(CliError, match="No record found"):
            _cmd_devices_remove(CONFIG, client, args)


def test_test_print_saves_pdf(tmp_path: Path, capsys) -> None:
    output = tmp_path / "label.pdf"
    args = Namespace(output_file=output)

    with _client({}, content=b"%PDF-1.4 fake") as client:
        _cmd_test_print(CONFIG, client, args)

    assert output.read_bytes() == b"%PDF-1.4 fake"
    assert json.loads(capsys.readouterr().out)["file"] == str(output)


def test_http_errors_surface_detail() -> None:
    args = Namespace(output_file=Path("unused.pdf"))

    with _client({}, status=502, response_json={"detail": "lpr exited with 1"}) as client:
        with pytest.raises(CliError, match="502.*lpr exited with 1"):
            _cmd_test_print(CONFIG, client, args)


def test_remove_requires_a_target() -> None:
    with pytest.raises(SystemExit):
        _build_parser().parse_args(["devices", "remove"])


def test_remove_targets_are_mutually_exclusive() -> None:
    with pytest.raises(SystemExit):
        _build_parser().parse_args(["devices", "remove", "--mac", "1.2.3", "--all"])


def test_main_without_command_prints_help(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main([])
    assert excinfo.value.code == 1
    assert "usage:" in capsys.readouterr().out
