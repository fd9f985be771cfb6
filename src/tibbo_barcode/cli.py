"""Command-line client for the label service HTTP API."""

from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional

import httpx
import yaml


DEFAULT_SERVER_URL = "http://127.0.0.1:8118"
ENV_PREFIX = "TIBBO_BARCODE_"


class CliError(Exception):
    """Raised when the CLI encounters an expected error condition."""


@dataclass(frozen=True)
class ClientConfig:
    """Configuration for the API client."""

    server_url: str
    output: str
    timeout: float = 30.0


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "CLI for the Tibbo barcode label service. Uses TIBBO_BARCODE_* env vars "
            "for defaults and prints JSON (default) or YAML. Examples: "
            "`tibbo-barcode-ctl devices list`, `tibbo-barcode-ctl devices remove "
            "--mac 0.36.119.87.182.61`, `tibbo-barcode-ctl test-print -o label.pdf`."
        )
    )
    parser.add_argument(
        "--server-url",
        default=_env("SERVER_URL", DEFAULT_SERVER_URL),
        help=(
            f"Base URL for the label service (env: {ENV_PREFIX}SERVER_URL). "
            f"Defaults to {DEFAULT_SERVER_URL}."
        ),
    )
    parser.add_argument(
        "--output",
        choices=["json", "yaml"],
        default=_env("OUTPUT", "json"),
        help=f"Output format for responses (env: {ENV_PREFIX}OUTPUT). Defaults to 'json'.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=float(_env("TIMEOUT", "30") or 30),
        help="Request timeout in seconds; test prints wait for lpr to finish.",
    )

    subparsers = parser.add_subparsers(dest="command", required=False)
    _add_status_commands(subparsers)
    _add_device_commands(subparsers)
    _add_label_commands(subparsers)
    return parser


def _add_status_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    health = subparsers.add_parser(
        "health",
        help="Check API health (GET /health returns {'status': 'ok'} when healthy)",
    )
    health.set_defaults(func=_cmd_health)

    status = subparsers.add_parser(
        "status",
        help="Show service status (GET /status with record count and subsystem health)",
    )
    status.set_defaults(func=_cmd_status)


def _add_device_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    devices = subparsers.add_parser(
        "devices",
        help="Labeled device records (list/remove)",
        description=(
            "Manage the records of devices that already received a label. Removing a "
            "record makes the device print again on the next scan."
        ),
    )
    device_sub = devices.add_subparsers(dest="device_command", required=True)

    list_cmd = device_sub.add_parser("list", help="List records (GET /devices)")
    list_cmd.set_defaults(func=_cmd_devices_list)

    remove = device_sub.add_parser(
        "remove",
        help="Remove records (GET /remove)",
        description="Remove one record by address or raw identifier, or every record with --all.",
    )
    target = remove.add_mutually_exclusive_group(required=True)
    target.add_argument("--mac", help="Canonical device address, e.g. 0.36.119.87.182.61")
    target.add_argument("--id", dest="raw_id", help="Raw identifier as reported by discovery")
    target.add_argument("--all", action="store_true", help="Remove every record")
    remove.set_defaults(func=_cmd_devices_remove)


def _add_label_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    test = subparsers.add_parser(
        "test-print",
        help="Print the sample label (GET /test) and save the returned PDF",
    )
    test.add_argument(
        "--output-file",
        "-o",
        type=Path,
        default=Path("test-label.pdf"),
        help="Where to write the label PDF (default: test-label.pdf)",
    )
    test.set_defaults(func=_cmd_test_print)

    barcode = subparsers.add_parser(
        "barcode",
        help="Fetch a Code 128 barcode as SVG (GET /barcode)",
    )
    barcode.add_argument("text", help="Text to encode")
    barcode.add_argument(
        "--output-file",
        "-o",
        type=Path,
        help="Where to write the SVG; printed to stdout when omitted",
    )
    barcode.set_defaults(func=_cmd_barcode)


def _load_config(args: argparse.Namespace) -> ClientConfig:
    output = args.output or "json"
    if output not in {"json", "yaml"}:
        raise CliError("Output format must be 'json' or 'yaml'")
    if args.timeout <= 0:
        raise CliError("Timeout must be positive")
    return ClientConfig(server_url=args.server_url, output=output, timeout=args.timeout)


def _build_client(config: ClientConfig) -> httpx.Client:
    return httpx.Client(base_url=config.server_url, timeout=config.timeout)


def _print_output(data: Any, output: str) -> None:
    if output == "yaml":
        yaml.safe_dump(data, sys.stdout, sort_keys=False)
    else:
        json.dump(data, sys.stdout, indent=2)
        sys.stdout.write("\n")


def _raise_for_status(response: httpx.Response) -> None:
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        detail = None
        try:
            detail = response.json().get("detail")
        except (ValueError, AttributeError):
            detail = response.text
        raise CliError(f"Request failed ({response.status_code}): {detail}") from exc


def _handle_response(response: httpx.Response) -> Any:
    _raise_for_status(response)
    if response.content:
        return response.json()
    return None


def _cmd_health(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/health"))
    _print_output(data, config.output)


def _cmd_status(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/status"))
    _print_output(data, config.output)


def _cmd_devices_list(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/devices"))
    _print_output(data, config.output)


def _cmd_devices_remove(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    params: Mapping[str, str]
    if args.mac:
        params = {"mac": args.mac}
    elif args.raw_id:
        params = {"id": args.raw_id}
    elif args.all:
        params = {}
    else:
        raise CliError("Choose one of --mac, --id or --all")
    data = _handle_response(client.get("/remove", params=params))
    if not data or not data.get("success"):
        target = args.mac or args.raw_id
        raise CliError(f"No record found for {target!r}")
    _print_output(data, config.output)


def _cmd_test_print(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    response = client.get("/test")
    _raise_for_status(response)
    args.output_file.write_bytes(response.content)
    _print_output(
        {"status": "printed", "file": str(args.output_file), "bytes": len(response.content)},
        config.output,
    )


def _cmd_barcode(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    response = client.get("/barcode", params={"text": args.text})
    _raise_for_status(response)
    if args.output_file:
        args.output_file.write_text(response.text, encoding="utf-8")
        _print_output({"file": str(args.output_file)}, config.output)
    else:
        sys.stdout.write(response.text)
        sys.stdout.write("\n")


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(args=argv)

    try:
        config = _load_config(args)
        if not args.command:
            parser.print_help()
            sys.exit(1)

        client = _build_client(config)
        with client:
            func: Callable[[ClientConfig, httpx.Client, argparse.Namespace], None] = args.func
            func(config, client, args)
    except CliError as exc:  # pragma: no cover - CLI feedback path
        sys.stderr.write(f"Error: {exc}\n")
        sys.exit(1)
    except httpx.RequestError as exc:  # pragma: no cover - CLI feedback path
        sys.stderr.write(f"HTTP request failed: {exc}\n")
        sys.exit(1)
    except OSError as exc:  # pragma: no cover - CLI feedback path
        sys.stderr.write(f"Cannot write output: {exc}\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
