"""
Export Selector

Cost exports land as
    <prefix>/<export-name>/<YYYYMMDD>-<YYYYMMDD>/<YYYYMMDDHHMM>/<run-id>/part_N.parquet

Each subscription's export runs on its own schedule, and manual re-runs add
further timestamp folders under the same date range. Reading every file would
double count, so per date range only the files from the freshest export day
are kept. Daily (MTD) and monthly (finalized) exports are never mixed for the
same window.
"""

import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

import structlog

from app.schemas.costs import ExportFile, ExportSource, ReportingPeriod

logger = structlog.get_logger()

DATE_RANGE_PATTERN = re.compile(r"(\d{8})-(\d{8})")
TIMESTAMP_PATTERN = re.compile(r"/(\d{12})/")


def _parse_yyyymmdd(value: str) -> date:
    return datetime.strptime(value, "%Y%m%d").date()


def parse_export_path(path: str, last_modified: Optional[datetime] = None) -> Optional[ExportFile]:
    """Parse an export blob name; None when it does not follow the export layout."""
    if not path.lower().endswith(".parquet"):
        return None

    range_match = DATE_RANGE_PATTERN.search(path)
    ts_match = TIMESTAMP_PATTERN.search(path)
    if not range_match or not ts_match:
        return None

    try:
        folder_start = _parse_yyyymmdd(range_match.group(1))
        folder_end = _parse_yyyymmdd(range_match.group(2))
        timestamp = ts_match.group(1)
        # validates the day part of the timestamp
        _parse_yyyymmdd(timestamp[:8])
    except ValueError:
        return None

    return ExportFile(
        path=path,
        last_modified=last_modified,
        date_range_key=range_match.group(0),
        folder_start=folder_start,
        folder_end=folder_end,
        export_timestamp=timestamp,
        export_timestamp_date=timestamp[:8],
        is_monthly="monthly" in path.lower(),
    )


def select_latest_per_range(files: Iterable[ExportFile]) -> List[ExportFile]:
    """
    Group by date range and keep every file from the most recent export day.

    Several files can share that day (one per subscription export); all of
    them are needed for a complete snapshot. Output order is deterministic.
    """
    groups: Dict[str, List[ExportFile]] = defaultdict(list)
    for f in files:
        groups[f.date_range_key].append(f)

    selected: List[ExportFile] = []
    for key in sorted(groups):
        group = groups[key]
        latest_day = max(f.export_timestamp_date for f in group)
        selected.extend(f for f in group if f.export_timestamp_date == latest_day)

    return sorted(selected, key=lambda f: f.path)


@dataclass
class ExportSelection:
    main: List[ExportFile] = field(default_factory=list)
    comparison: List[ExportFile] = field(default_factory=list)
    source: ExportSource = ExportSource.DAILY

    @property
    def folders(self) -> List[str]:
        return sorted({f"{f.date_range_key}/{f.export_timestamp}" for f in self.main + self.comparison})


class ExportSelector:
    """Chooses the minimal, non-overlapping file set for a reporting period."""

    def catalog(self, blobs: Iterable[tuple]) -> List[ExportFile]:
        """Parse (name, last_modified) pairs, dropping anything unparseable."""
        parsed = []
        for name, last_modified in blobs:
            export = parse_export_path(name, last_modified)
            if export is None:
                logger.debug("export_path_unparseable", path=name)
                continue
            parsed.append(export)
        return parsed

    def daily_files(self, files: Iterable[ExportFile], start: date, end: date) -> List[ExportFile]:
        """Daily exports whose date-range folder overlaps the window."""
        candidates = [
            f for f in files
            if not f.is_monthly and f.folder_end >= start and f.folder_start <= end
        ]
        return select_latest_per_range(candidates)

    def monthly_files(self, files: Iterable[ExportFile], start: date, end: date) -> List[ExportFile]:
        """Monthly exports whose folder lies entirely inside the window."""
        candidates = [
            f for f in files
            if f.is_monthly and f.folder_start >= start and f.folder_end <= end
        ]
        return select_latest_per_range(candidates)

    def select(self, files: Iterable[ExportFile], period: ReportingPeriod) -> ExportSelection:
        files = list(files)
        if period.source == ExportSource.MONTHLY:
            main = self.monthly_files(files, period.start, period.end)
        else:
            main = self.daily_files(files, period.start, period.end)

        comparison = self.monthly_files(files, period.comparison_start, period.comparison_end)

        logger.info(
            "export_files_selected",
            period=period.key,
            source=period.source.value,
            catalogued=len(files),
            main=len(main),
            comparison=len(comparison)
        )
        return ExportSelection(main=main, comparison=comparison, source=period.source)
