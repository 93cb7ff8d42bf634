from datetime import datetime, timedelta

import pandas as pd

TREND_WEEKS = 8


def iso_week_key(day):
    """
    Returns (iso_year, iso_week, key) for a date/datetime.
    The key is 'YYYYWW', e.g. '202404'. The ISO year differs from the calendar
    year around New Year (2024-12-31 is 2025-W01, 2021-01-01 is 2020-W53).
    """
    iso_year, iso_week, _ = day.isocalendar()
    return iso_year, iso_week, f"{iso_year:04d}{iso_week:02d}"


def _count(value):
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def bucket_weeks(observations, now, weeks=TREND_WEEKS):
    """
    Builds the weekly trend series ending at the week containing `now`.
    `observations` maps 'YYYYWW' keys to counts; weeks without an entry get 0.
    Returned oldest week first.
    """
    observations = observations or {}
    buckets = []
    for i in range(weeks):
        day = now - timedelta(days=7 * i)
        year, week, key = iso_week_key(day)
        buckets.insert(0, {"year": year, "week": week, "count": _count(observations.get(key))})
    return buckets


def current_week_count(observations, now):
    _, _, key = iso_week_key(now)
    return _count((observations or {}).get(key))


def weekly_counts(conn, user_id, now=None, weeks=TREND_WEEKS):
    """
    Aggregates a user's achievements from the last `weeks` weeks into
    {'YYYYWW': count} using ISO week numbering.
    """
    now = now or datetime.now()
    since = (now - timedelta(weeks=weeks)).strftime('%Y-%m-%d %H:%M:%S')

    query = """
        SELECT created_at
        FROM achievements
        WHERE user_id = ? AND created_at >= ?
    """
    df = pd.read_sql_query(query, conn, params=(user_id, since))
    if df.empty:
        return {}

    df['created_at'] = pd.to_datetime(df['created_at'])
    iso = df['created_at'].dt.isocalendar()
    df['yw'] = iso['year'].astype(int).map('{:04d}'.format) + iso['week'].astype(int).map('{:02d}'.format)

    counts = df.groupby('yw').size()
    return {key: int(count) for key, count in counts.items()}
