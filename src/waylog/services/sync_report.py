from __future__ import annotations

from waylog.synchronizer import ProviderResult, PullSummary


class SyncReporter:
    def __init__(self, *, line_prefix: str = ""):
        self._line_prefix = line_prefix

    def format_provider_line(self, result: ProviderResult) -> str:
        if result.not_installed:
            return f"{self._line_prefix}- {result.provider}: not installed"
        if result.error:
            return f"{self._line_prefix}- {result.provider}: failed ({result.error})"
        extras = [
            f"{name}={count}"
            for name, count in (
                ("malformed", result.malformed),
                ("malformed_lines", result.malformed_lines),
                ("other_projects", result.unattributed),
            )
            if count
        ]
        line = (
            f"{self._line_prefix}- {result.provider}: imported={result.imported}, "
            f"skipped={result.skipped}, failed={result.failed}"
        )
        return ", ".join([line, *extras])

    def format_summary_lines(self, summary: PullSummary) -> list[str]:
        lines = [
            f"{self._line_prefix}Pull complete: imported={summary.imported}, "
            f"skipped={summary.skipped}, failed={summary.failed}"
        ]
        if summary.seeded:
            lines.append(f"{self._line_prefix}Ledger rebuilt from {summary.seeded} existing archive(s)")
        for result in summary.results:
            lines.append(self.format_provider_line(result))
        return lines
