# backend/app/services/code_formatting.py
"""
Render upstream `markdown` code payloads as chat-friendly text.

Detection order matters: more specific shapes are checked first.
Every renderer returns a bold label line plus a body; anything that does not
parse falls back to a plain fenced block.
"""

from __future__ import annotations

import json
import re
from typing import List

_HTTP_LOG_DETECT = re.compile(r"\d+\.\d+\.\d+\.\d+\s+-\s+-\s+\[\d{2}/\w+/\d{4}:\d{2}:\d{2}:\d{2}\]")
_HTTP_LOG_LINE = re.compile(
    r"(\d+\.\d+\.\d+\.\d+)\s+-\s+-\s+\[(\d{2})/(\w+)/(\d{4}):(\d{2}):(\d{2}):(\d{2})\]\s+\"(\w+)\s+([^\"]+)\"\s+(\d+)"
)
_ISO_LOG_DETECT = re.compile(r"\[\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z\]")
_ISO_LOG_LINE = re.compile(r"\[(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z)\]\s+(.+)")
_PROCESS_HEADER = re.compile(r"PID\s+USER", re.IGNORECASE)
_PROCESS_DETECT = re.compile(r"PID\s+USER\s+COMMAND", re.IGNORECASE)
_PROCESS_ROW = re.compile(r"^\s*\d+\s+\w+\s+")
_NETWORK_DETECT = re.compile(r"Source\s+Destination\s+Protocol|Local Address\s+Remote Address", re.IGNORECASE)
_BASH_DETECT = re.compile(r"(while|if|for)\s+.*\s+do")
_HTTP_VERSION_SUFFIX = re.compile(r"\s+HTTP/[\d.]+$")


def fenced(text: str, lang: str = "") -> str:
    return f"```{lang}\n{text}\n```"


def _clean_lines(text: str) -> List[str]:
    # Upstream sometimes double-escapes newlines and wraps rows in backslashes
    cleaned = text.replace("\\n", "\n").replace("\\", "")
    return [line.strip() for line in cleaned.split("\n") if line.strip()]


def format_http_logs(text: str) -> str:
    logs = []
    status_codes: List[str] = []
    first_date = first_ip = None
    for m in _HTTP_LOG_LINE.finditer(text):
        ip, day, month, year, hh, mm, ss, method, path, code = m.groups()
        if first_date is None:
            first_date, first_ip = f"{day}/{month}/{year}", ip
        if code not in status_codes:
            status_codes.append(code)
        path = _HTTP_VERSION_SUFFIX.sub("", path.strip())
        logs.append(f"{hh}:{mm}:{ss} → {method} {path} ({code})")

    if not logs:
        return fenced(text)

    out = [f"*Server Logs - {first_date}*", "", f"IP: {first_ip}", ""]
    out.extend(logs)
    if len(status_codes) == 1:
        code = status_codes[0]
        summary = f"All failed ({code} errors)" if code[0] in "45" else f"All {code}"
    else:
        summary = f"Mixed responses ({', '.join(status_codes)})"
    out.extend(["", f"Status: {summary}"])
    return "\n".join(out)


def format_security_logs(text: str) -> str:
    entries = [f"[{ts}]\n{content}" for ts, content in _ISO_LOG_LINE.findall(text)]
    if not entries:
        return fenced(text)
    return "*Security Logs*\n\n" + "\n\n".join(entries)


def format_process_list(text: str) -> str:
    lines = _clean_lines(text)
    header_idx = next((i for i, line in enumerate(lines) if _PROCESS_HEADER.search(line)), None)
    if header_idx is None:
        return fenced(text)
    body = "\n".join(lines[header_idx + 1:])
    return f"*Process List*\n\n{lines[header_idx]}\n\n{body}".rstrip()


def format_network_traffic(text: str) -> str:
    lines = _clean_lines(text)
    if not lines:
        return fenced(text)
    return "*Network Traffic*\n\n" + "\n".join(lines)


def format_json(text: str) -> str:
    try:
        pretty = json.dumps(json.loads(text), indent=2)
    except ValueError:
        return fenced(text, "json")
    return "*JSON Policy*\n\n" + fenced(pretty, "json")


def format_bash(text: str) -> str:
    return "*Bash Script*\n\n" + fenced(text, "bash")


def format_markdown_content(markdown: str) -> str:
    """Pick a renderer by content shape. Empty input renders as ''."""
    if not markdown or not markdown.strip():
        return ""
    text = markdown.replace("\r\n", "\n").strip()

    if _HTTP_LOG_DETECT.search(text):
        return format_http_logs(text)
    if _ISO_LOG_DETECT.search(text):
        return format_security_logs(text)
    if _PROCESS_DETECT.search(text) or _PROCESS_ROW.match(text.split("\n")[0]):
        return format_process_list(text)
    if _NETWORK_DETECT.search(text):
        return format_network_traffic(text)
    if text.lstrip()[:1] in {"{", "["}:
        return format_json(text)
    if text.startswith("#!/bin/bash") or _BASH_DETECT.search(text):
        return format_bash(text)
    return fenced(text)
