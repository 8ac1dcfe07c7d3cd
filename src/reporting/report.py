"""Apply reporting."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from common import FAILED, NOT_ATTEMPTED, SKIPPED, SUCCEEDED, OperationResult

STATUS_EMOJI = {
    SUCCEEDED: '✅',
    FAILED: '❌',
    SKIPPED: '⏭️',
    NOT_ATTEMPTED: '⏸️',
}


@dataclass
class ApplyReport:
    """Collects an apply or destroy run and writes JSON and Markdown reports."""
    stack_id: str
    report_dir: Path
    verb: str = 'apply'
    status: str = ''
    fingerprint: str = ''
    operations: list[OperationResult] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def start(self, fingerprint: str = ''):
        """Mark run start."""
        self.started_at = datetime.now()
        self.fingerprint = fingerprint
        self.report_dir.mkdir(parents=True, exist_ok=True)

    def finish(self, result) -> list[Path]:
        """Record an ApplyResult and write report files.

        Returns:
            Paths of the written files
        """
        self.finished_at = datetime.now()
        self.status = result.status
        self.operations = list(result.results.values())
        self.outputs = dict(result.outputs)
        return [self._write_json(), self._write_markdown()]

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def to_dict(self) -> dict:
        return {
            'stack_id': self.stack_id,
            'verb': self.verb,
            'status': self.status,
            'fingerprint': self.fingerprint,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration': round(self.duration, 2),
            'operations': [op.to_dict() for op in self.operations],
            'outputs': self.outputs,
        }

    def _write_json(self) -> Path:
        filename = self._report_filename('json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)
        return filename

    def _write_markdown(self) -> Path:
        lines = [
            f"# {self.verb} {self.stack_id}",
            "",
            f"**Status**: {self.status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
        ]
        if self.fingerprint:
            lines.append(f"**Plan**: `{self.fingerprint[:12]}`")
        lines.extend([
            "",
            "## Operations",
            "",
            "| Node | Action | Status | Duration | Message |",
            "|------|--------|--------|----------|---------|",
        ])

        for op in self.operations:
            emoji = STATUS_EMOJI.get(op.status, '❓')
            lines.append(
                f"| {op.node_id} | {op.action} | {emoji} {op.status} | "
                f"{op.duration:.1f}s | {op.message} |"
            )

        if self.outputs:
            lines.extend(["", "## Outputs", "", "| Name | Value |", "|------|-------|"])
            for name, value in sorted(self.outputs.items()):
                lines.append(f"| {name} | {value if value is not None else '(unresolved)'} |")

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename('md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, ext: str) -> Path:
        """Timestamped filename including stack and verb."""
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = (self.status or 'unknown').lower()
        return self.report_dir / f"{timestamp}.{self.stack_id}.{self.verb}.{status}.{ext}"
