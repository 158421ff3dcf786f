from __future__ import annotations

import csv
from pathlib import Path

from domain.custody import Asset, AssetId, AssetStatus, Holder, HolderId


def load_inventory_seed(csv_path: Path) -> list[Asset]:
    """Load provisioned assets.

    Each row should contain: asset_id,name[,category,serial_number,status]
    Status defaults to Available. Held assets cannot be provisioned from a CSV.
    """
    rows = _read_rows(csv_path, required={"asset_id", "name"})

    assets: list[Asset] = []
    for row in rows:
        raw_status = _optional(row.get("status")) or AssetStatus.AVAILABLE
        try:
            status = AssetStatus(raw_status)
        except ValueError as err:
            msg = f"Inventory seed {csv_path}: asset {row['asset_id']} has unknown status {raw_status}"
            raise ValueError(msg) from err
        if status == AssetStatus.HELD:
            raise ValueError(f"Inventory seed {csv_path}: asset {row['asset_id']} cannot be provisioned as Held")
        assets.append(
            Asset(
                asset_id=AssetId(row["asset_id"].strip()),
                name=row["name"].strip(),
                status=status,
                category=_optional(row.get("category")),
                serial_number=_optional(row.get("serial_number")),
            )
        )
    return assets


def load_holder_seed(csv_path: Path) -> list[Holder]:
    """Load holders. Each row should contain: holder_id,name[,email,role]"""
    rows = _read_rows(csv_path, required={"holder_id", "name"})
    return [
        Holder(
            holder_id=HolderId(row["holder_id"].strip()),
            name=row["name"].strip(),
            email=_optional(row.get("email")),
            role=_optional(row.get("role")),
        )
        for row in rows
    ]


def _read_rows(csv_path: Path, *, required: set[str]) -> list[dict[str, str]]:
    if not csv_path.exists():
        return []

    with csv_path.open(newline="") as f:
        reader = csv.DictReader(f)
        if reader.fieldnames is None:
            raise ValueError(f"Seed CSV {csv_path} is empty or missing headers")

        missing = required - set(reader.fieldnames)
        if missing:
            raise ValueError(f"Seed CSV {csv_path} missing required columns: {', '.join(sorted(missing))}")

        rows = list(reader)

    for line_no, row in enumerate(rows, start=2):
        for column in required:
            if not (row.get(column) or "").strip():
                raise ValueError(f"Seed CSV {csv_path} line {line_no}: empty {column}")
    return rows


def _optional(raw: str | None) -> str | None:
    if raw is None:
        return None
    normalized = raw.strip()
    return normalized or None
