import argparse
import os
from datetime import datetime

import pandas as pd
import plotly.graph_objects as go
import plotly.subplots as sp

from db import get_db_connection, resolve_db_path
from dose_schedule import schedule_medications
from trends import bucket_weeks, weekly_counts

# Configuration
REPORT_DIR = "reports"


def ensure_report_dir():
    if not os.path.exists(REPORT_DIR):
        os.makedirs(REPORT_DIR)


def find_user(conn, username):
    row = conn.execute("SELECT id, username FROM users WHERE username = ?", (username,)).fetchone()
    return row


def get_trend_frame(conn, user_id, now):
    buckets = bucket_weeks(weekly_counts(conn, user_id, now), now)
    df = pd.DataFrame(buckets)
    df['label'] = df['year'].astype(str) + '-W' + df['week'].map('{:02d}'.format)
    return df


def get_category_frame(conn, user_id):
    query = """
    SELECT category, metric, COUNT(*) as entries, SUM(amount) as total_amount
    FROM achievements
    WHERE user_id = ?
    GROUP BY category, metric
    ORDER BY entries DESC
    """
    return pd.read_sql_query(query, conn, params=(user_id,))


def get_schedule_frame(conn, user_id, now):
    rows = conn.execute(
        "SELECT id, name, dosage, interval_hours, freq_type, time_of_day, days_of_week "
        "FROM medications WHERE user_id = ? ORDER BY name",
        (user_id,)
    ).fetchall()
    meds = schedule_medications(rows, now)
    return pd.DataFrame([
        {
            'name': m['name'],
            'dosage': m['dosage'] or '',
            'freq_type': m['freq_type'],
            'next_due': m['next_due'].strftime('%a %d %b %H:%M') if m['next_due'] else 'none in horizon',
            'upcoming': len(m['schedule']),
        }
        for m in meds
    ], columns=['name', 'dosage', 'freq_type', 'next_due', 'upcoming'])


def generate_report(username, trend_df, category_df, schedule_df, report_file):
    ensure_report_dir()

    fig = sp.make_subplots(
        rows=2, cols=2,
        specs=[[{"colspan": 2}, None], [{"type": "table"}, {"type": "table"}]],
        subplot_titles=("Achievements per ISO Week (Last 8 Weeks)", "By Category", "Medication Schedule"),
        vertical_spacing=0.15
    )

    # Chart 1: Weekly trend
    fig.add_trace(go.Bar(
        x=trend_df['label'],
        y=trend_df['count'],
        name='Achievements',
        marker_color='seagreen'
    ), row=1, col=1)

    # Table: category breakdown
    fig.add_trace(go.Table(
        header=dict(values=['Category', 'Metric', 'Entries', 'Total'], fill_color='paleturquoise', align='left'),
        cells=dict(
            values=[
                category_df['category'],
                category_df['metric'],
                category_df['entries'],
                category_df['total_amount'].round(1)
            ],
            fill_color='lavender',
            align='left'
        )
    ), row=2, col=1)

    # Table: next doses
    fig.add_trace(go.Table(
        header=dict(values=['Medication', 'Dosage', 'Frequency', 'Next Due', 'Upcoming'],
                    fill_color='paleturquoise', align='left'),
        cells=dict(
            values=[
                schedule_df['name'],
                schedule_df['dosage'],
                schedule_df['freq_type'],
                schedule_df['next_due'],
                schedule_df['upcoming']
            ],
            fill_color='lavender',
            align='left'
        )
    ), row=2, col=2)

    fig.update_layout(
        title_text=f"Health Trends for {username}",
        height=800,
        showlegend=False
    )
    fig.update_yaxes(title_text="Achievements", row=1, col=1)
    fig.update_xaxes(title_text="ISO Week", row=1, col=1)

    fig.write_html(report_file)
    print(f"Report generated: {report_file}")
    print("\nSummary Stats:")
    print(f"Achievements (8 weeks): {int(trend_df['count'].sum())}")
    print(f"Busiest week: {trend_df.loc[trend_df['count'].idxmax(), 'label']}")
    print(f"Medications tracked: {len(schedule_df)}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="HTML report of weekly achievement trends and upcoming doses.")
    parser.add_argument("username", help="User to report on")
    parser.add_argument("--db", default=None, help="Path to the sqlite database (defaults to the app's)")
    args = parser.parse_args()

    db_path = args.db or resolve_db_path()
    report_file = os.path.join(REPORT_DIR, f"trends_{args.username}.html")

    try:
        conn = get_db_connection(db_path)
        user = find_user(conn, args.username)
        if user is None:
            print(f"Error: no user named {args.username} in {db_path}")
        else:
            now = datetime.now()
            print(f"Fetching data from {db_path}...")
            trend_df = get_trend_frame(conn, user['id'], now)
            category_df = get_category_frame(conn, user['id'])
            schedule_df = get_schedule_frame(conn, user['id'], now)

            print("Generating HTML report...")
            generate_report(user['username'], trend_df, category_df, schedule_df, report_file)
        conn.close()
    except Exception as e:
        print(f"Error: {e}")
