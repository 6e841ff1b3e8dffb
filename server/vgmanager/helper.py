#!/usr/bin/env python3
"""Inventory helper that prints LVM state as JSON.

``list`` prints a JSON array of volume group names. ``show VG`` prints a
snapshot of one group: its sizes plus every logical volume (hidden ones
included) and every physical volume. Sizes are in bytes and
``copy_percent`` is expressed in parts per 1e8.
"""

import argparse
import json
import subprocess
import sys
from typing import Any, Dict, List, Optional, Sequence

REPORT_FLAGS = ("--reportformat", "json", "--units", "b", "--nosuffix")

VG_FIELDS = "vg_name,vg_uuid,vg_size,vg_free,vg_extent_size"
LV_FIELDS = (
    "lv_name,lv_uuid,lv_size,segtype,copy_percent,move_pv,pool_lv,origin,"
    "data_percent,metadata_percent"
)
PV_FIELDS = "pv_name,vg_name,pv_size,pv_free"

COPY_PERCENT_SCALE = 100_000_000


class HelperError(Exception):
    """An LVM reporting command failed."""


def run_report(command: str, section: str, fields: str, *args: str) -> List[Dict[str, Any]]:
    """Run an LVM reporting command and return the rows of ``section``."""
    argv = [command, *REPORT_FLAGS, "-o", fields, *args]
    try:
        result = subprocess.run(argv, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise HelperError(f"Failed to run {command}: {exc}") from exc
    if result.returncode != 0:
        raise HelperError(
            f"{command} exited with non-zero exit status {result.returncode}: "
            f"{result.stderr.strip()}"
        )
    return parse_report(result.stdout, section)


def parse_report(text: str, section: str) -> List[Dict[str, Any]]:
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise HelperError(f"Unable to decode LVM report: {exc}") from exc
    rows: List[Dict[str, Any]] = []
    for report in document.get("report") or []:
        rows.extend(report.get(section) or [])
    return rows


def _int_or_none(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def percent_to_copy_percent(value: Any) -> Optional[int]:
    """Convert an LVM percentage string into parts per 1e8."""
    if value in (None, ""):
        return None
    try:
        return int(round(float(value) * COPY_PERCENT_SCALE / 100))
    except (TypeError, ValueError):
        return None


def percent_to_ratio(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value) / 100
    except (TypeError, ValueError):
        return None


def strip_hidden(name: str) -> str:
    """``lvs -a`` wraps hidden volume names in brackets."""
    if name.startswith("[") and name.endswith("]"):
        return name[1:-1]
    return name


def convert_logical_volume(row: Dict[str, Any]) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "name": strip_hidden(row.get("lv_name", "")),
        "uuid": row.get("lv_uuid") or None,
        "size": _int_or_none(row.get("lv_size")),
        "type": row.get("segtype") or None,
        "copy_percent": percent_to_copy_percent(row.get("copy_percent")),
        "move_pv": row.get("move_pv") or None,
        "pool": strip_hidden(row.get("pool_lv") or "") or None,
        "origin": strip_hidden(row.get("origin") or "") or None,
    }
    if record["type"] == "thin-pool":
        record["data_allocated_ratio"] = percent_to_ratio(row.get("data_percent"))
        record["metadata_allocated_ratio"] = percent_to_ratio(row.get("metadata_percent"))
    return record


def convert_physical_volume(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "device": row.get("pv_name"),
        "size": _int_or_none(row.get("pv_size")),
        "free-size": _int_or_none(row.get("pv_free")),
    }


def build_snapshot(
    vg_row: Dict[str, Any],
    lv_rows: Sequence[Dict[str, Any]],
    pv_rows: Sequence[Dict[str, Any]],
) -> Dict[str, Any]:
    name = vg_row.get("vg_name")
    return {
        "name": name,
        "uuid": vg_row.get("vg_uuid") or None,
        "size": _int_or_none(vg_row.get("vg_size")),
        "free-size": _int_or_none(vg_row.get("vg_free")),
        "extent-size": _int_or_none(vg_row.get("vg_extent_size")),
        "lvs": [convert_logical_volume(row) for row in lv_rows],
        "pvs": [
            convert_physical_volume(row)
            for row in pv_rows
            if row.get("vg_name") == name
        ],
    }


def list_volume_groups() -> List[str]:
    rows = run_report("vgs", "vg", "vg_name")
    return sorted({row["vg_name"] for row in rows if row.get("vg_name")})


def show_volume_group(name: str) -> Dict[str, Any]:
    vg_rows = run_report("vgs", "vg", VG_FIELDS, name)
    if not vg_rows:
        raise HelperError(f"Volume group {name} not found")
    lv_rows = run_report("lvs", "lv", LV_FIELDS, "-a", name)
    pv_rows = run_report("pvs", "pv", PV_FIELDS, "-S", f"vg_name={name}")
    return build_snapshot(vg_rows[0], lv_rows, pv_rows)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Print LVM inventory as JSON.")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("list", help="list volume group names")
    show = subparsers.add_parser("show", help="dump one volume group")
    show.add_argument("name", help="volume group name")
    args = parser.parse_args(argv)

    try:
        if args.command == "list":
            output: Any = list_volume_groups()
        else:
            output = show_volume_group(args.name)
    except HelperError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    print(json.dumps(output))
    return 0


if __name__ == "__main__":
    sys.exit(main())
