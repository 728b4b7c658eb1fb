"""CLI entrypoints for infectio commands."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import ConfigError, InfectioConfig, load_config
from .logging import configure_logging, get_logger
from .models import Artifact, Report, Session
from .sessions import MemberScanError, SessionManager
from .tree import build_tree, render_tree

logger = get_logger("cli")


def _add_verbose_option(
    parser: argparse.ArgumentParser, *, suppress_default: bool = False
) -> None:
    kwargs: dict[str, object] = {
        "action": "store_true",
        "help": "Increase log verbosity for troubleshooting.",
    }
    kwargs["default"] = argparse.SUPPRESS if suppress_default else False
    parser.add_argument("-v", "--verbose", **kwargs)


def _add_config_option(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        default=None,
        help="Path to .infectio.yml or the directory holding it (defaults to current directory).",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="infectio",
        description="Static triage of suspicious files: entropy, strings, indicators and container members.",
    )
    _add_verbose_option(parser)
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan_parser = subparsers.add_parser("scan", help="Analyze a file and print its report.")
    _add_verbose_option(scan_parser, suppress_default=True)
    _add_config_option(scan_parser)
    scan_parser.add_argument("path", help="File to analyze.")
    scan_parser.add_argument(
        "--password",
        default=None,
        help="Secret used to re-run the analysis when the file holds encrypted members.",
    )
    scan_parser.add_argument("--json", action="store_true", help="Emit reports as JSON.")
    scan_parser.add_argument(
        "--recursive",
        action="store_true",
        help="Also analyze every extractable member of the file, depth-bounded by configuration.",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP service.")
    _add_verbose_option(serve_parser, suppress_default=True)
    _add_config_option(serve_parser)
    serve_parser.add_argument("--host", default=None, help="Bind address (overrides configuration).")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port (overrides configuration).")

    return parser


async def scan_file(
    manager: SessionManager,
    artifact: Artifact,
    *,
    password: Optional[str] = None,
    recursive: bool = False,
) -> List[Session]:
    """Analyze ``artifact`` (and optionally its members) and return the sessions in scan order."""
    root_id = manager.open(artifact)
    await _settle(manager, root_id, password)
    order = [root_id]
    if recursive:
        queue = [root_id]
        while queue:
            parent_id = queue.pop(0)
            structured = manager.report(parent_id).structured
            if structured is None:
                continue
            for item in structured.items:
                if not item.scannable:
                    continue
                try:
                    member_id = manager.scan_member(parent_id, item)
                except MemberScanError as exc:
                    logger.info("Skipping member: %s", exc)
                    continue
                if member_id in order:
                    continue
                await _settle(manager, member_id, password)
                order.append(member_id)
                queue.append(member_id)
    await manager.drain()
    return [manager.get(session_id) for session_id in order]


async def _settle(manager: SessionManager, session_id: str, password: Optional[str]) -> None:
    report = await manager.wait(session_id)
    if password and report.needs_secret:
        manager.retry_with_secret(session_id, password)
        await manager.wait(session_id)


def _session_payload(manager: SessionManager, session: Session) -> Dict[str, Any]:
    return {
        "id": session.id,
        "name": session.display_name,
        "size": session.artifact.size,
        "declared_type": session.artifact.declared_type or None,
        "depth": session.depth,
        "parent_id": session.parent_id,
        "completion": manager.completion_state(session.id).value,
        "report": session.report.to_dict(),
    }


def _format_report(manager: SessionManager, session: Session) -> List[str]:
    report: Report = session.report
    state = manager.completion_state(session.id).value
    lines = [f"== {session.display_name} ({session.artifact.size} bytes) [{state}]"]
    if report.content_type is not None:
        lines.append(f"Content type: {report.content_type.mime_type} ({report.content_type.description})")
    if report.entropy is not None:
        lines.append(f"Entropy: {report.entropy:.4f}")
    if report.metadata:
        lines.append("Metadata:")
        lines.extend(f"  {entry.title}: {entry.value}" for entry in report.metadata)
    if report.heuristics:
        lines.append("Heuristics:")
        lines.extend(f"  [{finding.severity.value}] {finding.name}" for finding in report.heuristics)
    lines.append(f"Strings: {len(report.strings)}")
    if report.ips:
        lines.append("IPs: " + ", ".join(report.ips))
    if report.urls:
        lines.append("URLs: " + ", ".join(report.urls))
    if report.structured is not None:
        if report.structured.items:
            lines.append("Members:")
            lines.extend(f"  {line}" for line in render_tree(build_tree(report.structured.items)))
        if report.structured.imports:
            lines.append("Imports:")
            for module, symbols in report.structured.imports.items():
                lines.append(f"  {module}: {', '.join(symbols) or '-'}")
    if report.failures:
        lines.append("Failures:")
        lines.extend(f"  {kind.value}: {message}" for kind, message in report.failures.items())
    if report.needs_secret:
        lines.append("Encrypted content found; rerun with --password to unlock it.")
    return lines


def _load(args: argparse.Namespace, parser: argparse.ArgumentParser) -> InfectioConfig:
    location = Path(args.config) if args.config else Path.cwd()
    try:
        return load_config(location)
    except ConfigError as exc:
        parser.exit(1, f"{exc}\n")


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for infectio commands."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    config = _load(args, parser)
    configure_logging(
        verbose=bool(getattr(args, "verbose", False)),
        level=config.logging.level,
        log_file=config.logging.file,
    )

    if args.command == "scan":
        path = Path(args.path)
        try:
            data = path.read_bytes()
        except OSError as exc:
            parser.exit(1, f"Cannot read {path}: {exc.strerror or exc}\n")
        artifact = Artifact.create(path.name, data)
        manager = SessionManager(config=config)
        sessions = asyncio.run(
            scan_file(manager, artifact, password=args.password, recursive=bool(args.recursive))
        )
        if args.json:
            print(json.dumps([_session_payload(manager, session) for session in sessions], indent=2))
        else:
            blocks = ["\n".join(_format_report(manager, session)) for session in sessions]
            print("\n\n".join(blocks))
    elif args.command == "serve":
        from .service import run_service

        host = args.host or config.service.host
        port = args.port or config.service.port
        run_service(config, host=host, port=port)
    else:  # pragma: no cover - argparse enforces choices
        parser.exit(1, "Unknown command\n")


if __name__ == "__main__":
    main(sys.argv[1:])
