#!/usr/bin/env python3
"""Find hosts whose MAC address has not shown up on any switch for a while.

The script correlates two files:

``switch history``
    Line-oriented log written by the switch walker. A useful line starts
    with a ``YYYYMMDD_HHMMSS`` timestamp followed by three
    whitespace-delimited columns and the MAC token, for example::

        20190107_031500 sw-core-1 Gi1/0/12 vlan20 AABBCCDDEEFF

    Lines of any other shape are ignored.

``host database``
    ``%``-delimited inventory. Field 0 is the IP address, field 1 the host
    name and field 8 the MAC address (``AA-BB-CC-DD-EE-FF``). Comment lines,
    blank lines and lines matching one of the exclusion patterns are skipped.

Commands:

``scan`` (default)
    Load the switch history, scan the host database and print one line per
    stale host to stdout::

        DING! <ip> <hostname> <mac> Months: <n>

``history``
    Load the switch history only and print the sighting window, the
    sighting count and the computed age for every MAC address.

Only the last two sightings of a MAC address (in file order, not by date)
are kept. With a single sighting the age is counted up to the current
month, with two sightings it is the distance between them. Hosts without
any sighting are never reported.

Settings are read from ``configs/stalemac.yml`` (when present) and can be
overridden on the command line. Status messages go to stderr.
"""

from __future__ import annotations

import argparse
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Pattern, Tuple

import yaml

HISTORY_LINE_PATTERN = re.compile(
    r"^(?P<date>\d+_\d+)\s+\S+\s+\S+\s+\S+\s+(?P<mac>(?:[0-9A-F]+,?)+)"
)
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
SIGHTING_WINDOW = 2

INVENTORY_DELIMITER = "%"
INVENTORY_IP_INDEX = 0
INVENTORY_HOST_INDEX = 1
INVENTORY_MAC_INDEX = 8
INVENTORY_MIN_FIELDS = INVENTORY_MAC_INDEX + 1
COMMENT_PREFIX = "#"

DEFAULT_MONTHS = 6
DEFAULT_HISTORY = "fakehistory.txt"
DEFAULT_DATABASE = "fakehosts.txt"
DEFAULT_EXCLUDE: List[str] = ["host13", "host42"]
DEFAULT_CONFIG = Path("configs") / "stalemac.yml"
SETTINGS_KEYS = {"months", "history", "database", "verbose", "exclude"}

CONSOLE_SEPARATOR = "--------------------------------------------"


def status(message: str = "") -> None:
    print(message, file=sys.stderr, flush=True)


def program_name() -> str:
    return Path(sys.argv[0]).name if sys.argv and sys.argv[0] else "stalemac"


@dataclass
class Settings:
    months: int = DEFAULT_MONTHS
    history: Path = Path(DEFAULT_HISTORY)
    database: Path = Path(DEFAULT_DATABASE)
    verbose: bool = True
    exclude: List[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDE))


@dataclass
class ScanStats:
    history_lines: int = 0
    history_matched: int = 0
    history_skipped: int = 0
    inventory_lines: int = 0
    comments_skipped: int = 0
    excluded: int = 0
    malformed: int = 0
    no_history: int = 0
    date_errors: int = 0
    checked: int = 0
    stale: int = 0


@dataclass
class SightingRecord:
    mac: str
    dates: List[str] = field(default_factory=list)
    count: int = 0

    def add_sighting(self, date: str) -> None:
        # FIFO of two in file order, not the two latest dates by value.
        if len(self.dates) == SIGHTING_WINDOW:
            self.dates.pop(0)
        self.dates.append(date)
        self.count += 1


class SightingIndex:
    """Sighting windows keyed by MAC address.

    Filled once from the switch history and only read afterwards.
    """

    def __init__(self) -> None:
        self._records: Dict[str, SightingRecord] = {}

    def record(self, mac: str, date: str) -> SightingRecord:
        entry = self._records.setdefault(mac, SightingRecord(mac))
        entry.add_sighting(date)
        return entry

    def lookup(self, mac: str) -> SightingRecord | None:
        return self._records.get(mac)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, mac: object) -> bool:
        return mac in self._records

    def __iter__(self) -> Iterator[SightingRecord]:
        for mac in sorted(self._records):
            yield self._records[mac]


@dataclass
class InventoryRecord:
    ip: str
    hostname: str
    mac: str
    line_number: int = 0

    @property
    def normalised_mac(self) -> str:
        return normalise_mac(self.mac)


@dataclass
class StalenessEntry:
    ip: str
    hostname: str
    mac: str
    months: int


def ensure_string_list(value: object, *, config_label: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"Некоректна структура {config_label}: exclude має бути списком рядків")
    return [item for item in value if item]


def compile_exclude_patterns(patterns: Iterable[str], *, config_label: str = "exclude") -> List[Pattern[str]]:
    compiled: List[Pattern[str]] = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as exc:
            raise ValueError(f"Некоректний regex у {config_label}: {pattern!r}: {exc}") from exc
    return compiled


def load_settings(config_path: Path, *, required: bool = False) -> Settings:
    """Read settings from the YAML file at *config_path*.

    A missing file yields the defaults unless *required* is set (the path was
    given explicitly). Any structural problem raises ``ValueError``.
    """

    settings = Settings()
    config_label = config_path.as_posix()

    if not config_path.exists():
        if required:
            raise ValueError(f"Файл конфігурації {config_label} не знайдено")
        return settings

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ValueError(f"Неможливо прочитати {config_label}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ValueError(f"Неможливо розпарсити {config_label}: {exc}") from exc

    if not isinstance(data, dict):
        raise ValueError(f"Некоректна структура {config_label}")

    unknown = sorted(str(key) for key in data if key not in SETTINGS_KEYS)
    if unknown:
        raise ValueError(f"Невідомі ключі у {config_label}: {', '.join(unknown)}")

    if "months" in data:
        months = data["months"]
        if isinstance(months, bool) or not isinstance(months, int) or months < 0:
            raise ValueError(f"Некоректне значення months у {config_label}: {months!r}")
        settings.months = months

    for key in ("history", "database"):
        if key not in data:
            continue
        value = data[key]
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"Некоректне значення {key} у {config_label}: {value!r}")
        setattr(settings, key, Path(value.strip()))

    if "verbose" in data:
        verbose = data["verbose"]
        if not isinstance(verbose, bool):
            raise ValueError(f"Некоректне значення verbose у {config_label}: {verbose!r}")
        settings.verbose = verbose

    if "exclude" in data:
        settings.exclude = ensure_string_list(data["exclude"], config_label=config_label)
        compile_exclude_patterns(settings.exclude, config_label=config_label)

    return settings


def apply_cli_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    if args.months is not None:
        settings.months = args.months
    if args.history is not None:
        settings.history = args.history
    if args.database is not None:
        settings.database = args.database
    if args.verbose is not None:
        settings.verbose = args.verbose
    if args.exclude is not None:
        settings.exclude = [item for item in args.exclude if item]
    return settings


def parse_history_line(line: str) -> Tuple[str, str] | None:
    match = HISTORY_LINE_PATTERN.match(line)
    if not match:
        return None
    return match.group("date"), match.group("mac")


def load_sighting_index(lines: Iterable[str], stats: ScanStats | None = None) -> SightingIndex:
    index = SightingIndex()

    for line in lines:
        if stats is not None:
            stats.history_lines += 1

        parsed = parse_history_line(line)
        if parsed is None:
            if stats is not None:
                stats.history_skipped += 1
            continue

        date, mac = parsed
        index.record(mac, date)
        if stats is not None:
            stats.history_matched += 1

    return index


def parse_timestamp(value: str) -> datetime:
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT)
    except ValueError as exc:
        raise ValueError(f"Некоректний формат дати {value!r}, очікується YYYYMMDD_HHMMSS") from exc


def elapsed_months(start: str, end: str | None = None, now: datetime | None = None) -> int:
    """Whole calendar months from *start* to *end* (or to *now*).

    Day of month is ignored and the result may be negative.
    """

    start_dt = parse_timestamp(start)
    if end is not None:
        end_dt = parse_timestamp(end)
    else:
        end_dt = now if now is not None else datetime.now()

    return 12 * (end_dt.year - start_dt.year) + (end_dt.month - start_dt.month)


def normalise_mac(value: str) -> str:
    return value.strip().replace("-", "").replace(":", "").upper()


def inventory_skip_reason(line: str, exclude: List[Pattern[str]]) -> str | None:
    if line.startswith(COMMENT_PREFIX) or not line.strip():
        return "comment"
    if any(pattern.search(line) for pattern in exclude):
        return "excluded"
    return None


def split_inventory_line(line: str, line_number: int = 0) -> InventoryRecord:
    fields = line.split(INVENTORY_DELIMITER)
    if len(fields) < INVENTORY_MIN_FIELDS:
        raise ValueError(
            f"Рядок {line_number}: очікується щонайменше {INVENTORY_MIN_FIELDS} полів, "
            f"знайдено {len(fields)}"
        )

    return InventoryRecord(
        ip=fields[INVENTORY_IP_INDEX],
        hostname=fields[INVENTORY_HOST_INDEX],
        mac=fields[INVENTORY_MAC_INDEX],
        line_number=line_number,
    )


def parse_inventory_line(
    line: str,
    exclude: List[Pattern[str]],
    line_number: int = 0,
) -> InventoryRecord | None:
    line = line.rstrip("\r\n")
    if inventory_skip_reason(line, exclude) is not None:
        return None
    return split_inventory_line(line, line_number)


def iter_inventory_records(
    lines: Iterable[str],
    exclude: List[Pattern[str]],
    stats: ScanStats | None = None,
) -> Iterator[InventoryRecord]:
    """Yield host records from the database lines.

    Malformed lines are reported on stderr and skipped.
    """

    for line_number, raw_line in enumerate(lines, start=1):
        line = raw_line.rstrip("\r\n")
        if stats is not None:
            stats.inventory_lines += 1

        reason = inventory_skip_reason(line, exclude)
        if reason is not None:
            if stats is not None:
                if reason == "comment":
                    stats.comments_skipped += 1
                else:
                    stats.excluded += 1
            continue

        try:
            record = split_inventory_line(line, line_number)
        except ValueError as exc:
            status(f"⚠️ {exc}")
            if stats is not None:
                stats.malformed += 1
            continue

        yield record


def months_since_seen(record: SightingRecord, now: datetime | None = None) -> int:
    if not record.dates:
        raise ValueError(f"Для {record.mac} немає жодної дати")
    if len(record.dates) == 1:
        return elapsed_months(record.dates[0], None, now)
    # Distance between the two window entries, not up to now.
    return elapsed_months(record.dates[0], record.dates[1])


def find_stale_hosts(
    records: Iterable[InventoryRecord],
    index: SightingIndex,
    months: int,
    now: datetime | None = None,
    stats: ScanStats | None = None,
) -> Iterator[StalenessEntry]:
    for record in records:
        mac = record.normalised_mac
        sighting = index.lookup(mac)
        if sighting is None:
            if stats is not None:
                stats.no_history += 1
            continue

        try:
            elapsed = months_since_seen(sighting, now)
        except ValueError as exc:
            status(f"⚠️ Рядок {record.line_number} ({record.hostname}): {exc}")
            if stats is not None:
                stats.date_errors += 1
            continue

        if stats is not None:
            stats.checked += 1

        if elapsed >= months:
            if stats is not None:
                stats.stale += 1
            yield StalenessEntry(ip=record.ip, hostname=record.hostname, mac=mac, months=elapsed)


def format_report_line(entry: StalenessEntry) -> str:
    return f"DING! {entry.ip} {entry.hostname} {entry.mac} Months: {entry.months}"


def read_switch_history(path: Path, stats: ScanStats | None = None) -> SightingIndex:
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        return load_sighting_index(handle, stats)


def load_history_or_report(settings: Settings, stats: ScanStats) -> SightingIndex | None:
    if settings.verbose:
        status(f"🔧 Loading switch history from {settings.history}...")

    try:
        index = read_switch_history(settings.history, stats)
    except OSError as exc:
        status(f"{program_name()}: unable to open switchwalk history '{settings.history}': {exc}")
        return None

    if settings.verbose:
        status(
            f"✅ Історію комутаторів завантажено: MAC-адрес={len(index)}, "
            f"рядків={stats.history_matched}, пропущено={stats.history_skipped}"
        )
    return index


def print_scan_summary(settings: Settings, stats: ScanStats) -> None:
    if settings.verbose:
        status(f"✅ Рядків у базі хостів: {stats.inventory_lines}")
        status(f"   • коментарі/порожні: {stats.comments_skipped}")
        status(f"   • виключено: {stats.excluded}")
        status(f"   • без історії на комутаторах: {stats.no_history}")
        status(f"   • перевірено: {stats.checked}")
        status(f"   • застарілих (>= {settings.months} міс.): {stats.stale}")

    if stats.malformed:
        status(f"⚠️ Пропущено некоректних рядків: {stats.malformed}")
    if stats.date_errors:
        status(f"⚠️ Пропущено хостів з некоректними датами: {stats.date_errors}")

    if settings.verbose:
        status(CONSOLE_SEPARATOR)


def run_scan(settings: Settings, now: datetime | None = None) -> int:
    if now is None:
        now = datetime.now()

    try:
        exclude = compile_exclude_patterns(settings.exclude)
    except ValueError as exc:
        status(f"❌ {exc}")
        return 1

    stats = ScanStats()
    index = load_history_or_report(settings, stats)
    if index is None:
        return 1

    if settings.verbose:
        status(f"🔧 Scanning host database {settings.database}...")

    try:
        with settings.database.open("r", encoding="utf-8", errors="replace") as handle:
            records = iter_inventory_records(handle, exclude, stats)
            for entry in find_stale_hosts(records, index, settings.months, now, stats):
                print(format_report_line(entry))
    except OSError as exc:
        status(f"{program_name()}: unable to open host database '{settings.database}': {exc}")
        return 1

    print_scan_summary(settings, stats)
    return 0


def format_history_line(record: SightingRecord, now: datetime | None = None) -> str:
    try:
        months = str(months_since_seen(record, now))
    except ValueError:
        months = "?"
    return f"{record.mac} count={record.count} dates={','.join(record.dates)} months={months}"


def run_history(settings: Settings, now: datetime | None = None) -> int:
    if now is None:
        now = datetime.now()

    stats = ScanStats()
    index = load_history_or_report(settings, stats)
    if index is None:
        return 1

    for record in index:
        print(format_history_line(record, now))

    if settings.verbose:
        status(CONSOLE_SEPARATOR)
    return 0


def non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"очікується ціле число: {value!r}") from exc
    if number < 0:
        raise argparse.ArgumentTypeError(f"значення не може бути від'ємним: {value}")
    return number


def timestamp_argument(value: str) -> datetime:
    try:
        return parse_timestamp(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Пошук хостів, MAC-адреси яких давно не з'являлися на комутаторах",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help=f"YAML файл налаштувань (типово {DEFAULT_CONFIG.as_posix()}, якщо існує)",
    )
    parser.add_argument(
        "-m",
        "--months",
        type=non_negative_int,
        default=None,
        help=f"Поріг у місяцях (типово {DEFAULT_MONTHS})",
    )
    parser.add_argument(
        "--history",
        type=Path,
        default=None,
        help=f"Файл історії комутаторів (типово {DEFAULT_HISTORY})",
    )
    parser.add_argument(
        "--database",
        type=Path,
        default=None,
        help=f"База хостів (типово {DEFAULT_DATABASE})",
    )
    parser.add_argument(
        "-x",
        "--exclude",
        action="append",
        default=None,
        metavar="PATTERN",
        help="Regex для виключення рядків бази хостів (можна повторювати, замінює список)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        dest="verbose",
        action="store_const",
        const=True,
        default=None,
        help="Виводити хід обробки у stderr (типово увімкнено)",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        dest="verbose",
        action="store_const",
        const=False,
        help="Не виводити хід обробки",
    )
    parser.add_argument(
        "--now",
        type=timestamp_argument,
        default=None,
        metavar="YYYYMMDD_HHMMSS",
        help="Поточний момент для розрахунку віку (типово системний час)",
    )
    subparsers = parser.add_subparsers(dest="command")

    scan_parser = subparsers.add_parser(
        "scan",
        help="Знайти застарілі хости у базі (типова команда)",
    )
    scan_parser.set_defaults(command_func=run_scan)

    history_parser = subparsers.add_parser(
        "history",
        help="Показати вікно дат і кількість появ для кожної MAC-адреси",
    )
    history_parser.set_defaults(command_func=run_history)

    return parser


def main(argv: List[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config_path = args.config if args.config is not None else DEFAULT_CONFIG
    try:
        settings = load_settings(config_path, required=args.config is not None)
    except ValueError as exc:
        status(f"❌ {exc}")
        return 1
    apply_cli_overrides(settings, args)

    command_func = getattr(args, "command_func", run_scan)
    return command_func(settings, args.now)


if __name__ == "__main__":
    sys.exit(main())
