from __future__ import annotations

import csv
from datetime import datetime
import io

from app.db.models import FetchedLink

CSV_HEADER = (
    "URL",
    "Title",
    "Snippet",
    "Display Link",
    "Formatted URL",
    "Rank",
    "Page Number",
    "Fetched At",
)


def export_filename(combination_id: int, *, now: datetime) -> str:
    timestamp = now.strftime("%Y%m%dT%H%M%SZ")
    return f"query-results-{combination_id}-{timestamp}.csv"


def links_to_csv(links: list[FetchedLink]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for link in links:
        writer.writerow(
            (
                link.url,
                link.title or "",
                link.snippet or "",
                link.display_link or "",
                link.formatted_url or "",
                link.rank,
                link.page_number,
                link.fetched_at.isoformat() if link.fetched_at else "",
            )
        )
    return buffer.getvalue()
