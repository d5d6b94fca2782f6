"""Every clock read in tutorhub goes through ``TimeProvider``.

Auto-detection, stale cleanup, booking cutoffs and waitlist expiry are all
tested against a pinned clock, which only works if no service module reads
the system clock on its own.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path

from tutorhub.core.time_provider import APP_ZONEINFO, TimeProvider


ROOT = Path(__file__).resolve().parents[1]
PACKAGE_DIR = ROOT / "tutorhub"

# Files allowed to touch the system clock, relative to the repo root.
ALLOWED = {
    "tutorhub/core/time_provider.py",
}

CLOCK_CALLS = re.compile(
    r"\b(?:datetime\.(?:now|utcnow|today)|date\.today|time\.(?:time|monotonic))\("
)


def _violations() -> list[str]:
    found = []
    for file_path in sorted(PACKAGE_DIR.rglob("*.py")):
        rel = file_path.relative_to(ROOT).as_posix()
        if rel in ALLOWED:
            continue
        for idx, line in enumerate(file_path.read_text(encoding="utf-8").splitlines(), start=1):
            if CLOCK_CALLS.search(line):
                found.append(f"{rel}:{idx}: {line.strip()}")
    return found


def test_services_read_the_clock_through_time_provider() -> None:
    violations = _violations()
    assert not violations, "Direct clock reads found:\n" + "\n".join(violations)


def test_allowed_files_exist() -> None:
    missing = [rel for rel in ALLOWED if not (ROOT / rel).is_file()]
    assert not missing, f"Stale entries in ALLOWED: {missing}"


def test_local_now_is_naive_wall_clock_in_app_timezone() -> None:
    class UtcClock(TimeProvider):
        def now(self) -> datetime:
            return datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    expected = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc).astimezone(APP_ZONEINFO).replace(tzinfo=None)
    clock = UtcClock()
    assert clock.local_now() == expected
    assert clock.local_now().tzinfo is None
    assert clock.today() == expected.date()
