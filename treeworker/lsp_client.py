"""A minimal language-server client that collects diagnostics for edited files."""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlsplit

logger = logging.getLogger(__name__)

_HEADER_END = b"\r\n\r\n"
_CONTENT_LENGTH = "Content-Length:"
_LENGTH_RE = re.compile(r"\+?[0-9]+")
_READ_SIZE = 65536
_INIT_READ_SIZE = 4096
_FALLBACK_URI = "file:///none"


class DiagnosticSeverity(IntEnum):
    ERROR = 1
    WARNING = 2
    INFORMATION = 3
    HINT = 4


@dataclass(frozen=True)
class Position:
    line: int
    character: int


@dataclass(frozen=True)
class Range:
    start: Position
    end: Position


@dataclass(frozen=True)
class Diagnostic:
    range: Range
    severity: DiagnosticSeverity | None
    message: str
    code: str | None = None


@dataclass
class DiagnosticsFile:
    """Diagnostics for one file, split into new ones and counts of already-seen ones."""

    path: str
    diagnostics: list[Diagnostic]
    seen_errors: int = 0
    seen_warnings: int = 0


@dataclass
class LspServerConfig:
    language: str
    command: str
    args: list[str] = field(default_factory=list)
    timeout_ms: int = 5000
    silence_ms: int = 500


@dataclass
class LspFileResult:
    path: str
    diagnostics: list[Diagnostic]


class LspError(Exception):
    """Starting or talking to a language server failed."""


def _is_u64(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value < 2**64


def _is_i64(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and -(2**63) <= value < 2**63


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _path_to_uri(path: Path) -> str:
    try:
        return path.as_uri()
    except ValueError:
        return _FALLBACK_URI


def _uri_to_path(uri: str) -> Path | None:
    try:
        parts = urlsplit(uri)
    except ValueError:
        return None
    if parts.scheme != "file" or parts.netloc not in ("", "localhost"):
        return None
    return Path(unquote(parts.path))


def _is_valid_uri(uri: str) -> bool:
    try:
        return bool(urlsplit(uri).scheme)
    except ValueError:
        return False


def parse_frame(buf: bytearray) -> Any | None:
    """Take one complete ``Content-Length`` framed JSON message off the front of ``buf``.

    Returns None, leaving ``buf`` untouched, when no complete valid frame is there.
    """
    pos = buf.find(_HEADER_END)
    if pos < 0:
        return None
    try:
        header = bytes(buf[:pos]).decode("utf-8")
    except UnicodeDecodeError:
        return None
    length: int | None = None
    for line in header.splitlines():
        if line.startswith(_CONTENT_LENGTH):
            value = line[len(_CONTENT_LENGTH):].strip()
            if _LENGTH_RE.fullmatch(value):
                length = int(value)
                break
    if length is None:
        return None
    body_start = pos + len(_HEADER_END)
    if len(buf) < body_start + length:
        return None
    try:
        value = json.loads(bytes(buf[body_start:body_start + length]))
    except ValueError:
        return None
    del buf[:body_start + length]
    return value


def _position(value: Any) -> Position | None:
    if not isinstance(value, dict):
        return None
    line = value.get("line")
    character = value.get("character")
    if not (_is_u64(line) and _is_u64(character)):
        return None
    return Position(line & 0xFFFFFFFF, character & 0xFFFFFFFF)


def _severity(value: Any) -> DiagnosticSeverity | None:
    if not _is_u64(value):
        return None
    try:
        return DiagnosticSeverity(value)
    except ValueError:
        return None


def _convert_one(item: Any) -> Diagnostic | None:
    if not isinstance(item, dict):
        return None
    rng = item.get("range")
    if not isinstance(rng, dict):
        return None
    message = item.get("message")
    if not isinstance(message, str):
        return None
    start = _position(rng.get("start"))
    end = _position(rng.get("end"))
    if start is None or end is None:
        return None
    code = item.get("code")
    return Diagnostic(
        range=Range(start, end),
        severity=_severity(item.get("severity")),
        message=message,
        code=code if isinstance(code, str) else None,
    )


def convert_diagnostics(value: Any) -> list[Diagnostic]:
    """Convert a published ``diagnostics`` array, dropping malformed items."""
    if not isinstance(value, list):
        return []
    return [d for d in map(_convert_one, value) if d is not None]


def diag_is_seen(diag: Diagnostic, shown: Iterable[Diagnostic]) -> bool:
    """True if ``shown`` holds a diagnostic on the same line with the same severity and text."""
    return any(
        s.range.start.line == diag.range.start.line
        and s.severity == diag.severity
        and s.message == diag.message
        for s in shown
    )


class LspClient:
    """A running language server fed with saved files and polled for diagnostics."""

    def __init__(self, process: subprocess.Popen, root_uri: str, lang_id: str) -> None:
        self._child = process
        self._stdin = process.stdin
        self.stdout_fd: int = process.stdout.fileno()
        self._read_buf = bytearray()
        self._next_id = 1
        self._opened: set[str] = set()
        self.diagnostics: dict[str, list[Diagnostic]] = {}
        self._pre_edit_diagnostics: dict[str, list[Diagnostic]] = {}
        self.pending_responses: dict[int, Any] = {}
        self.root_uri = root_uri
        self.lang_id = lang_id

    @classmethod
    def spawn(
        cls,
        lang_id: str,
        command: str,
        args: Sequence[str],
        root_uri: str,
        timeout_ms: int,
    ) -> "LspClient":
        """Start the server and complete the ``initialize`` handshake within ``timeout_ms``."""
        try:
            process = subprocess.Popen(
                [command, *args],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
            )
        except OSError as exc:
            raise LspError(f"spawn LSP {command}: {exc}") from exc
        if process.stdin is None:
            raise LspError("no stdin for LSP process")
        if process.stdout is None:
            raise LspError("no stdout for LSP process")

        client = cls(process, root_uri, lang_id)
        try:
            os.set_blocking(client.stdout_fd, False)
            client._initialize(timeout_ms)
        except BaseException:
            client._shutdown()
            raise
        return client

    def _initialize(self, timeout_ms: int) -> None:
        params = {
            "processId": os.getpid(),
            "rootUri": self.root_uri,
            "capabilities": {
                "textDocument": {
                    "synchronization": {
                        "didSave": True,
                        "willSave": False,
                        "willSaveWaitUntil": False,
                    }
                }
            },
        }
        req_id = self.send_request("initialize", params)
        deadline = time.monotonic() + timeout_ms / 1000
        buf = bytearray()
        while True:
            if time.monotonic() >= deadline:
                raise LspError("LSP initialize timed out")
            try:
                data = os.read(self.stdout_fd, _INIT_READ_SIZE)
            except BlockingIOError:
                time.sleep(0.005)
                continue
            except OSError as exc:
                raise LspError(f"read error: {exc}") from exc
            if not data:
                raise LspError("LSP process exited during initialize")
            buf.extend(data)
            while (frame := parse_frame(buf)) is not None:
                if isinstance(frame, dict):
                    frame_id = frame.get("id")
                    if _is_u64(frame_id) and frame_id == req_id:
                        self._write_notification("initialized", {})
                        return

    def __enter__(self) -> "LspClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._shutdown()

    def _shutdown(self) -> None:
        for stream in (self._child.stdin, self._child.stdout):
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    pass
        if self._child.poll() is None:
            self._child.kill()
        self._child.wait()

    def notify_saved(self, path: str | Path) -> None:
        """Tell the server that ``path`` was written, opening it on first use."""
        path = Path(path)
        uri = _path_to_uri(path)
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("LSP notify_saved read %s: %s", path, exc)
            return

        self._pre_edit_diagnostics[uri] = list(self.diagnostics.get(uri, []))

        if uri in self._opened:
            self._write_notification(
                "textDocument/didChange",
                {
                    "textDocument": {"uri": uri, "version": 1},
                    "contentChanges": [{"text": content}],
                },
            )
            self._write_notification("textDocument/didSave", {"textDocument": {"uri": uri}})
        else:
            self._write_notification(
                "textDocument/didOpen",
                {
                    "textDocument": {
                        "uri": uri,
                        "languageId": self.lang_id,
                        "version": 1,
                        "text": content,
                    }
                },
            )
            self._opened.add(uri)

    def send_request(self, method: str, params: Any) -> int:
        """Send a request and return its id."""
        request_id = self._next_id
        self._next_id += 1
        self._write_frame(
            {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        )
        return request_id

    def read_available(self) -> bool:
        """Read whatever the server has written; True if diagnostics or responses arrived."""
        while True:
            try:
                data = os.read(self.stdout_fd, _READ_SIZE)
            except BlockingIOError:
                break
            except OSError as exc:
                logger.warning("LSP read error: %s", exc)
                break
            if not data:
                logger.info("LSP client %s EOF", self.lang_id)
                self._read_buf.clear()
                break
            self._read_buf.extend(data)

        updated = False
        while (frame := parse_frame(self._read_buf)) is not None:
            if not isinstance(frame, dict):
                continue
            method = frame.get("method")
            if isinstance(method, str):
                if method != "textDocument/publishDiagnostics":
                    continue
                params = frame.get("params")
                if not isinstance(params, dict):
                    continue
                uri = params.get("uri")
                if isinstance(uri, str) and _is_valid_uri(uri):
                    self.diagnostics[uri] = convert_diagnostics(params.get("diagnostics"))
                    updated = True
            elif "id" in frame:
                frame_id = frame["id"]
                if _is_u64(frame_id):
                    self.pending_responses[frame_id] = frame
                    updated = True
                elif _is_i64(frame_id):
                    self.pending_responses[frame_id & 0xFFFFFFFFFFFFFFFF] = frame
                    updated = True
        return updated

    def all_diagnostics(self) -> list[LspFileResult]:
        """Every file that currently has diagnostics."""
        return [
            LspFileResult(path=uri, diagnostics=list(diags))
            for uri, diags in self.diagnostics.items()
            if diags
        ]

    def take_new_for_display(self, dirty_paths: Iterable[str | Path]) -> list[DiagnosticsFile]:
        """Diagnostics of the dirty files, split into new ones and counts of seen ones.

        Files with neither new nor seen issues are left out.
        """
        wanted = [Path(p) for p in dirty_paths]
        dirty_uris = [
            uri
            for uri in self.diagnostics
            if (fp := _uri_to_path(uri)) is not None and any(fp == p for p in wanted)
        ]

        results: list[DiagnosticsFile] = []
        for uri in dirty_uris:
            current = self.diagnostics.get(uri, [])
            logger.info("[LSP]   url=%s -> %d diagnostics", uri, len(current))
            pre = self._pre_edit_diagnostics.get(uri, [])
            new_diags: list[Diagnostic] = []
            seen_errors = 0
            seen_warnings = 0
            for diag in current:
                if diag_is_seen(diag, pre):
                    if diag.severity == DiagnosticSeverity.ERROR:
                        seen_errors += 1
                    elif diag.severity == DiagnosticSeverity.WARNING:
                        seen_warnings += 1
                else:
                    new_diags.append(diag)
            if new_diags or seen_errors or seen_warnings:
                results.append(
                    DiagnosticsFile(
                        path=uri,
                        diagnostics=new_diags,
                        seen_errors=seen_errors,
                        seen_warnings=seen_warnings,
                    )
                )
        return results

    def _write_frame(self, message: dict) -> None:
        body = _dumps(message).encode("utf-8")
        header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
        try:
            self._stdin.write(header)
            self._stdin.write(body)
            self._stdin.flush()
        except (OSError, ValueError):
            pass

    def _write_notification(self, method: str, params: Any) -> None:
        self._write_frame({"jsonrpc": "2.0", "method": method, "params": params})


_LANGUAGES = {
    "rs": "rust",
    "ts": "typescript",
    "tsx": "typescript",
    "js": "javascript",
    "jsx": "javascript",
    "mjs": "javascript",
    "py": "python",
    "go": "go",
    "c": "c",
    "h": "c",
    "cpp": "cpp",
    "cc": "cpp",
    "cxx": "cpp",
    "hpp": "cpp",
}


def detect_language(path: str | Path) -> str | None:
    """The language id for a file, judged by its extension."""
    suffix = Path(path).suffix
    if not suffix:
        return None
    return _LANGUAGES.get(suffix[1:])


def default_server(lang_id: str) -> LspServerConfig | None:
    """The usual language server for ``lang_id``, if one is known."""
    if lang_id == "rust":
        return LspServerConfig("rust", "rust-analyzer", [], 5000, 500)
    if lang_id in ("typescript", "javascript"):
        return LspServerConfig(lang_id, "typescript-language-server", ["--stdio"], 8000, 500)
    if lang_id == "python":
        return LspServerConfig("python", "pylsp", [], 5000, 500)
    if lang_id == "go":
        return LspServerConfig("go", "gopls", [], 5000, 500)
    if lang_id in ("c", "cpp"):
        return LspServerConfig(lang_id, "clangd", [], 5000, 500)
    return None


def binary_exists(cmd: str) -> bool:
    """True if ``cmd --version`` can be started."""
    try:
        subprocess.run(
            [cmd, "--version"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    except OSError:
        return False
    return True


_SEVERITY_LABELS = {
    DiagnosticSeverity.ERROR: "error",
    DiagnosticSeverity.WARNING: "warning",
    DiagnosticSeverity.INFORMATION: "info",
    DiagnosticSeverity.HINT: "hint",
}


def format_diagnostics(results: Iterable[LspFileResult]) -> str:
    """Render diagnostics grouped into errors, warnings and the rest."""
    errors: list[str] = []
    warnings: list[str] = []
    others: list[str] = []
    for result in results:
        for d in result.diagnostics:
            label = _SEVERITY_LABELS.get(d.severity, "note") if d.severity else "note"
            code = f"[{d.code}] " if d.code is not None else ""
            line = (
                f"{result.path}:{d.range.start.line + 1}:{d.range.start.character}: "
                f"{code}{label}: {d.message}"
            )
            if d.severity == DiagnosticSeverity.ERROR:
                errors.append(line)
            elif d.severity == DiagnosticSeverity.WARNING:
                warnings.append(line)
            else:
                others.append(line)

    sections = []
    if errors:
        sections.append("## Errors\n" + "\n".join(errors))
    if warnings:
        sections.append("## Warnings\n" + "\n".join(warnings))
    if others:
        sections.append("## Other Diagnostics\n" + "\n".join(others))
    if not sections:
        return "No diagnostics."
    return "## LSP Diagnostics\n\n" + "\n\n".join(sections)