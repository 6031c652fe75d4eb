"""Index age inference for the retention sweeper."""

from datetime import UTC, datetime, timedelta

from index_sync.clients.elasticsearch import IndexRecord

_SAMPLE_DATE = datetime(2000, 12, 31, 23, 59, 59)


def date_from_name(name: str, date_format: str) -> datetime | None:
    """Parse the date suffix of an index name.

    Indices are named ``<prefix>-<date>``; the date is taken either after the
    last dash or from the trailing characters the format produces.

    Args:
        name: Index name.
        date_format: strftime format of the suffix.

    Returns:
        The suffix date (UTC), or None when the name carries no such date.
    """
    width = len(_SAMPLE_DATE.strftime(date_format))
    candidates = [name.rsplit("-", 1)[-1]]
    if len(name) > width:
        candidates.append(name[-width:])

    for candidate in candidates:
        try:
            parsed = datetime.strptime(candidate, date_format)
        except ValueError:
            continue
        return parsed.replace(tzinfo=UTC)
    return None


def index_age(record: IndexRecord, date_format: str, now: datetime) -> timedelta | None:
    """Age of an index: from its name when it parses, else from its creation date.

    Returns:
        The age, or None when neither source is available.
    """
    born = date_from_name(record.name, date_format) or record.created_at
    if born is None:
        return None
    return now - born

