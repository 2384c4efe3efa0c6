from __future__ import annotations

import argparse
import asyncio
import binascii
import os
import sys
from dataclasses import fields
from pathlib import Path
from typing import Any, TextIO

import orjson

from .capture_log import CapturedMessage
from .config import Config, coerce_field_value
from .connection import ConnectionManager
from .control import message_to_json
from .schema import SchemaParseError, UnknownType
from .session import CaptureSession


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    for field in fields(Config):
        flag = "--" + field.name.replace("_", "-")
        parser.add_argument(flag, dest=field.name, default=None)


def _cli_overrides(ns: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for field in fields(Config):
        value = getattr(ns, field.name, None)
        if value is None:
            continue
        overrides[field.name] = coerce_field_value(field.type, value)
    return overrides


def _emit(payload: Any, out: TextIO) -> None:
    out.write(orjson.dumps(payload).decode("utf-8") + "\n")
    out.flush()


def _load_session(config: Config, schema_path: str) -> CaptureSession:
    session = CaptureSession(config)
    asyncio.run(session.load_schema_file(schema_path))
    return session


def cmd_types(config: Config, schema_path: str, out: TextIO) -> int:
    session = _load_session(config, schema_path)
    for name in session.registry.type_names():
        descriptor = session.registry.descriptor(name)
        fields_desc = ",".join(
            f"{item.number}:{item.name}:{item.kind.value}" for item in descriptor.fields
        )
        out.write(f"{name}\t{fields_desc}\n")
    return 0


def _read_payload(hex_text: str | None, file_path: str | None) -> bytes:
    if file_path is not None:
        return Path(file_path).read_bytes()
    if hex_text is None:
        raise ValueError("one of --hex or --file is required")
    return binascii.unhexlify("".join(hex_text.split()))


def cmd_decode(
    config: Config,
    schema_path: str,
    payload: bytes,
    type_name: str | None,
    out: TextIO,
) -> int:
    session = _load_session(config, schema_path)
    if type_name is not None:
        session.select_type(type_name)
    message = session.capture(payload)
    _emit(message_to_json(message), out)
    return 0 if message.ok else 2


async def run_listen(
    config: Config,
    session: CaptureSession,
    *,
    target: str,
    duration_seconds: float | None,
    max_frames: int | None,
    out: TextIO,
    manager: ConnectionManager | None = None,
) -> int:
    manager = manager or ConnectionManager(config, runlog=session.runlog)
    queue: asyncio.Queue[CapturedMessage] = asyncio.Queue()
    session.add_listener(queue.put_nowait)
    session.attach(manager)
    await manager.connect(target)
    loop = asyncio.get_running_loop()
    deadline = None if duration_seconds is None else loop.time() + duration_seconds
    seen = 0
    try:
        while max_frames is None or seen < max_frames:
            timeout = None if deadline is None else deadline - loop.time()
            if timeout is not None and timeout <= 0:
                break
            try:
                message = await asyncio.wait_for(queue.get(), timeout)
            except asyncio.TimeoutError:
                break
            seen += 1
            _emit(message_to_json(message), out)
    finally:
        await session.detach()
        await manager.close()
    if session.current_error is not None:
        _emit({"current_error": session.current_error.message}, sys.stderr)
    return 0


def main(argv: list[str] | None = None, *, out: TextIO | None = None) -> int:
    out = out or sys.stdout
    parser = argparse.ArgumentParser(prog="pb_wiretap")
    subparsers = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    _add_config_args(common)

    types_cmd = subparsers.add_parser("types", parents=[common])
    types_cmd.add_argument("schema")

    decode = subparsers.add_parser("decode", parents=[common])
    decode.add_argument("schema")
    decode.add_argument("--type", dest="type_name", default=None)
    source = decode.add_mutually_exclusive_group(required=True)
    source.add_argument("--hex", dest="hex_payload", default=None)
    source.add_argument("--file", dest="payload_file", default=None)

    listen = subparsers.add_parser("listen", parents=[common])
    listen.add_argument("schema")
    listen.add_argument("--target", default=None)
    listen.add_argument("--type", dest="type_name", default=None)
    listen.add_argument("--duration-seconds", type=float, default=None)
    listen.add_argument("--max-frames", type=int, default=None)

    args = parser.parse_args(argv)

    try:
        config = Config.from_env_and_cli(_cli_overrides(args), os.environ)
        if args.command == "types":
            return cmd_types(config, args.schema, out)
        if args.command == "decode":
            payload = _read_payload(args.hex_payload, args.payload_file)
            return cmd_decode(config, args.schema, payload, args.type_name, out)
        if args.command == "listen":
            session = _load_session(config, args.schema)
            if args.type_name is not None:
                session.select_type(args.type_name)
            return asyncio.run(
                run_listen(
                    config,
                    session,
                    target=args.target or config.ws_url,
                    duration_seconds=args.duration_seconds,
                    max_frames=args.max_frames,
                    out=out,
                )
            )
    except (OSError, ValueError, SchemaParseError, UnknownType) as exc:
        print(f"pb_wiretap: {exc}", file=sys.stderr)
        return 1
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
