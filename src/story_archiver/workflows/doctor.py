from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .archiver_config import BUILD_ASSETS_DIR, STATIC_RESOURCES_DIR, STORY_ENDPOINT
from .archiver_utils import collect_environment_warnings, resolve_downloader


def _check_writable(path: Path) -> bool:
    probe = path
    while not probe.exists():
        if probe.parent == probe:
            return False
        probe = probe.parent
    return probe.is_dir() and os.access(probe, os.W_OK)


def build_doctor_report(
    *,
    out_root: Optional[Path] = None,
    downloader: Optional[str] = None,
) -> Dict[str, Any]:
    report: Dict[str, Any] = {
        "generated_at": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
        "ok": True,
        "checks": [],
        "environment_warnings": collect_environment_warnings(downloader),
    }

    def add_check(
        name: str,
        status: bool,
        *,
        detail: Optional[str] = None,
        remedy: Optional[str] = None,
        level: str = "warn",
    ) -> None:
        entry = {
            "name": name,
            "status": "ok" if status else "missing",
            "level": level,
            "detail": detail,
        }
        if remedy:
            entry["remedy"] = remedy
        report["checks"].append(entry)
        if not status and level == "warn":
            report["ok"] = False

    executable = resolve_downloader(downloader)
    add_check(
        "downloader",
        executable is not None,
        detail=executable or "video links will stay remote",
        remedy="Install yt-dlp or pass --downloader /path/to/yt-dlp.",
        level="info",
    )

    endpoint_set = bool(os.getenv("STORY_ARCHIVER_ENDPOINT"))
    add_check(
        "STORY_ARCHIVER_ENDPOINT",
        endpoint_set,
        detail=STORY_ENDPOINT,
        remedy="Set STORY_ARCHIVER_ENDPOINT to the story metadata endpoint.",
        level="info",
    )

    out = Path(out_root or Path.cwd())
    add_check(
        "output_root",
        _check_writable(out),
        detail=str(out),
        remedy="Choose a writable --out directory.",
        level="warn",
    )

    for name, path in (("static_resources", STATIC_RESOURCES_DIR), ("build_assets", BUILD_ASSETS_DIR)):
        add_check(
            name,
            path.is_dir() and any(path.iterdir()),
            detail=str(path),
            remedy="Reinstall story-archiver.",
            level="warn",
        )

    return report


def format_doctor_report(report: Dict[str, Any]) -> str:
    lines: List[str] = []
    lines.append("Story archiver doctor")
    lines.append(f"Generated: {report.get('generated_at')}")
    lines.append("")
    for check in report.get("checks", []):
        name = check.get("name", "check")
        status = check.get("status", "unknown")
        level = check.get("level", "info")
        lines.append(f"- [{level}] {name}: {status}")
        detail = check.get("detail")
        if detail:
            lines.append(f"  detail: {detail}")
        remedy = check.get("remedy")
        if remedy and status != "ok":
            lines.append(f"  remedy: {remedy}")
    warnings = report.get("environment_warnings") or []
    if warnings:
        lines.append("")
        lines.append("Environment warnings:")
        for warning in warnings:
            lines.append(f"- {warning.get('code', 'warning')}: {warning.get('message', '')}")
            remedy = warning.get("remedy", "")
            if remedy:
                lines.append(f"  remedy: {remedy}")
    return "\n".join(lines).rstrip() + "\n"
