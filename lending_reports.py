"""
Tabular read models over ledger listings - one row per borrowing with its
state, days overdue and fine at a given instant - plus CSV export.
"""

import logging

import numpy as np
import pandas as pd

from lending_rules import STATE_ACTIVE, STATE_OVERDUE, STATE_RETURNED, BORROWING_STATES

logger = logging.getLogger(__name__)

REPORT_COLUMNS = [
    'id', 'book_id', 'book_title', 'subscription_id', 'user_name', 'staff_id',
    'borrowed_at', 'due_at', 'returned_at',
    'fine_per_day', 'state', 'days_overdue', 'fine',
]


def borrowings_frame(borrowings, now):
    """borrowings must have book and subscription.user loaded (list_borrowings does this)

    fine_per_day and fine are floats here for pandas aggregation; the ledger's
    own fines stay Decimal.
    """
    records = [
        {
            'id': str(b.id),
            'book_id': str(b.book_id),
            'book_title': b.book.title if b.book is not None else None,
            'subscription_id': str(b.subscription_id),
            'user_name': b.subscription.user.name if b.subscription.user is not None else None,
            'staff_id': str(b.staff_id),
            'borrowed_at': b.borrowed_at,
            'due_at': b.due_at,
            'returned_at': b.returned_at,
            'fine_per_day': float(b.subscription.fine_per_day),
        }
        for b in borrowings
    ]
    df = pd.DataFrame.from_records(records, columns=REPORT_COLUMNS[:10])
    for col in ('borrowed_at', 'due_at', 'returned_at'):
        df[col] = pd.to_datetime(df[col])

    returned = df['returned_at'].notna()
    end = df['returned_at'].fillna(pd.Timestamp(now))
    # Timedelta.days floors; clip keeps early returns at zero and positive spans truncate
    df['days_overdue'] = (end - df['due_at']).dt.days.clip(lower=0).fillna(0).astype(int)
    df['state'] = np.where(
        returned,
        STATE_RETURNED,
        np.where(df['due_at'] < pd.Timestamp(now), STATE_OVERDUE, STATE_ACTIVE),
    )
    df['fine'] = (df['days_overdue'] * df['fine_per_day']).round(2)

    logger.info(
        f"Built borrowings frame: {len(df)} rows, {int((df['state'] == STATE_OVERDUE).sum())} overdue"
    )
    return df[REPORT_COLUMNS]


def lending_summary(df):
    counts = df['state'].value_counts()
    summary = {state: int(counts.get(state, 0)) for state in BORROWING_STATES}
    summary['total'] = int(len(df))
    summary['fines_outstanding'] = float(df.loc[df['state'] == STATE_OVERDUE, 'fine'].sum())
    summary['fines_on_returned'] = float(df.loc[df['state'] == STATE_RETURNED, 'fine'].sum())
    return summary


def save_borrowings_report(df, output_path):
    logger.info("Saving borrowings report to CSV")
    df.to_csv(output_path, index=False)
    logger.info(f"Borrowings report saved: {output_path} ({len(df)} records)")
