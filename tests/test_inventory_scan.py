import pathlib
import sys
from datetime import datetime

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SCRIPTS_DIR = PROJECT_ROOT / "scripts"

if str(SCRIPTS_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPTS_DIR))

import stalemac  # type: ignore  # noqa: E402

DEFAULT_EXCLUDE = stalemac.compile_exclude_patterns(stalemac.DEFAULT_EXCLUDE)


def _host_line(ip: str, host: str, mac: str) -> str:
    return f"{ip}%{host}%rack1%linux%owner%x%y%z%{mac}\n"


def _index(entries):
    index = stalemac.SightingIndex()
    for mac, date in entries:
        index.record(mac, date)
    return index


def test_normalise_mac_strips_separators_and_uppercases():
    assert stalemac.normalise_mac("aa-bb-cc-dd-ee-ff") == "AABBCCDDEEFF"
    assert stalemac.normalise_mac("00:1a:2b:3c:4d:5e") == "001A2B3C4D5E"
    assert stalemac.normalise_mac(" AABBCCDDEEFF ") == "AABBCCDDEEFF"


def test_parse_inventory_line_reads_ip_host_and_mac():
    record = stalemac.parse_inventory_line(
        _host_line("10.0.0.1", "host7", "aa-bb-cc-dd-ee-ff"),
        DEFAULT_EXCLUDE,
        line_number=3,
    )

    assert record == stalemac.InventoryRecord(
        ip="10.0.0.1",
        hostname="host7",
        mac="aa-bb-cc-dd-ee-ff",
        line_number=3,
    )
    assert record.normalised_mac == "AABBCCDDEEFF"


def test_parse_inventory_line_ignores_extra_fields():
    record = stalemac.parse_inventory_line(
        "10.0.0.2%host8%a%b%c%d%e%f%00-11-22-33-44-55%extra%more",
        DEFAULT_EXCLUDE,
    )

    assert record.mac == "00-11-22-33-44-55"


@pytest.mark.parametrize(
    "line",
    [
        "# ip%host%...\n",
        "#10.0.0.1%host7%a%b%c%d%e%f%AA-BB-CC-DD-EE-FF\n",
        "\n",
        "   \t \n",
        "10.0.0.13%host13%a%b%c%d%e%f%AA-BB-CC-DD-EE-FF\n",
        "10.0.0.42%web%a%host42%c%d%e%f%AA-BB-CC-DD-EE-FF\n",
    ],
)
def test_parse_inventory_line_skips_comments_blanks_and_excluded(line):
    assert stalemac.parse_inventory_line(line, DEFAULT_EXCLUDE) is None


def test_parse_inventory_line_rejects_short_lines():
    with pytest.raises(ValueError, match="Рядок 5"):
        stalemac.parse_inventory_line("10.0.0.1%host7%AA-BB", DEFAULT_EXCLUDE, line_number=5)


def test_iter_inventory_records_reports_malformed_lines_and_continues(capsys):
    lines = [
        "# inventory\n",
        _host_line("10.0.0.1", "host1", "AA-BB-CC-DD-EE-01"),
        "10.0.0.2%broken\n",
        "\n",
        _host_line("10.0.0.13", "host13", "AA-BB-CC-DD-EE-13"),
        _host_line("10.0.0.3", "host3", "AA-BB-CC-DD-EE-03"),
    ]
    stats = stalemac.ScanStats()

    records = list(stalemac.iter_inventory_records(lines, DEFAULT_EXCLUDE, stats))

    assert [record.hostname for record in records] == ["host1", "host3"]
    assert [record.line_number for record in records] == [2, 6]
    assert stats.inventory_lines == 6
    assert stats.comments_skipped == 2
    assert stats.excluded == 1
    assert stats.malformed == 1

    captured = capsys.readouterr()
    assert captured.out == ""
    assert "Рядок 3" in captured.err


def test_find_stale_hosts_skips_hosts_without_history():
    records = [stalemac.InventoryRecord("10.0.0.1", "host1", "AA-BB-CC-DD-EE-FF")]
    index = _index([("001122334455", "20100101_000000")])
    stats = stalemac.ScanStats()

    entries = list(
        stalemac.find_stale_hosts(records, index, 0, datetime(2030, 1, 1), stats)
    )

    assert entries == []
    assert stats.no_history == 1
    assert stats.checked == 0


def test_find_stale_hosts_single_sighting_over_threshold():
    records = [stalemac.InventoryRecord("10.0.0.1", "host1", "aa:bb:cc:dd:ee:ff")]
    index = _index([("AABBCCDDEEFF", "20180101_000000")])

    entries = list(
        stalemac.find_stale_hosts(records, index, 6, datetime(2018, 7, 31))
    )

    assert entries == [
        stalemac.StalenessEntry(ip="10.0.0.1", hostname="host1", mac="AABBCCDDEEFF", months=6)
    ]


def test_find_stale_hosts_single_sighting_below_threshold():
    records = [stalemac.InventoryRecord("10.0.0.1", "host1", "AA-BB-CC-DD-EE-FF")]
    index = _index([("AABBCCDDEEFF", "20180101_000000")])

    entries = list(
        stalemac.find_stale_hosts(records, index, 6, datetime(2018, 6, 30))
    )

    assert entries == []


def test_find_stale_hosts_two_sightings_measured_between_them():
    records = [stalemac.InventoryRecord("10.0.0.1", "host7", "AA-BB-CC-DD-EE-FF")]
    now = datetime(2030, 1, 1)

    recent = _index(
        [("AABBCCDDEEFF", "20180101_000000"), ("AABBCCDDEEFF", "20180201_000000")]
    )
    assert list(stalemac.find_stale_hosts(records, recent, 6, now)) == []

    distant = _index(
        [("AABBCCDDEEFF", "20180101_000000"), ("AABBCCDDEEFF", "20190101_000000")]
    )
    entries = list(stalemac.find_stale_hosts(records, distant, 6, now))
    assert [stalemac.format_report_line(entry) for entry in entries] == [
        "DING! 10.0.0.1 host7 AABBCCDDEEFF Months: 12"
    ]


def test_find_stale_hosts_skips_unparseable_dates(capsys):
    records = [
        stalemac.InventoryRecord("10.0.0.1", "host1", "AA-BB-CC-DD-EE-01", line_number=1),
        stalemac.InventoryRecord("10.0.0.2", "host2", "AA-BB-CC-DD-EE-02", line_number=2),
    ]
    index = _index(
        [("AABBCCDDEE01", "2018_1"), ("AABBCCDDEE02", "20100101_000000")]
    )
    stats = stalemac.ScanStats()

    entries = list(
        stalemac.find_stale_hosts(records, index, 6, datetime(2019, 1, 1), stats)
    )

    assert [entry.hostname for entry in entries] == ["host2"]
    assert stats.date_errors == 1
    assert stats.stale == 1
    assert "host1" in capsys.readouterr().err
