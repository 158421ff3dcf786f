from __future__ import annotations

from datetime import datetime
from typing import Sequence

from domain.custody import Asset, TransitionRecord


def format_timestamp(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M")


def render_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    widths = [len(header) for header in headers]
    for row in rows:
        for idx, cell in enumerate(row):
            widths[idx] = max(widths[idx], len(cell))

    header = " ".join(f"{text:<{widths[idx]}}" for idx, text in enumerate(headers))
    lines = [header, "-" * len(header)]
    for row in rows:
        lines.append(" ".join(f"{cell:<{widths[idx]}}" for idx, cell in enumerate(row)).rstrip())
    return "\n".join(lines)


def render_assets(assets: Sequence[Asset], *, title: str = "Assets:") -> None:
    print(title)
    if not assets:
        print("  (empty)")
        return

    rows = [
        (
            asset.asset_id,
            asset.display_name,
            asset.status.value,
            asset.holder_id or "-",
            format_timestamp(asset.held_since),
            format_timestamp(asset.expected_return),
        )
        for asset in assets
    ]
    print(render_table(("Asset", "Name", "Status", "Holder", "Held since", "Due"), rows))


def render_history(records: Sequence[TransitionRecord]) -> None:
    print("Transitions:")
    if not records:
        print("  (empty)")
        return

    rows = [
        (format_timestamp(record.occurred_at), record.asset_id, record.kind.value, record.acting_holder_id, record.note)
        for record in records
    ]
    print(render_table(("When", "Asset", "Kind", "Holder", "Note"), rows))
