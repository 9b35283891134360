"""
Library Lending Dashboard
Read-only view over the lending database: borrowing states, overdue loans
with fines, and subscriptions about to expire. Run with
`streamlit run streamlit_dashboard.py`.
"""

import os
from datetime import timedelta

import pandas as pd
import streamlit as st

from borrowing_ledger import BorrowingLedger
from database_models import create_database, get_session_factory
from lending_reports import borrowings_frame, lending_summary
from list_queries import MAX_LIMIT, BorrowingFilter, ListOptions, SubscriptionFilter
from subscription_manager import SubscriptionManager

st.set_page_config(
    page_title="Library Lending - Back Office Dashboard",
    layout="wide",
    initial_sidebar_state="expanded"
)

st.title("📚 Library Lending - Back Office Dashboard")
st.markdown("---")


@st.cache_resource
def get_services(db_url):
    session_factory = get_session_factory(create_database(db_url))
    return SubscriptionManager(session_factory), BorrowingLedger(session_factory)


def load_all(list_fn, flt):
    # pages of MAX_LIMIT until the total is reached; no caching, state is "now"-relative
    rows, skip = [], 0
    while True:
        page, total = list_fn(ListOptions(limit=MAX_LIMIT, skip=skip), flt)
        rows.extend(page)
        skip += len(page)
        if not page or skip >= total:
            return rows


db_url = st.sidebar.text_input("Database URL", os.environ.get('LENDING_DB_URL', 'sqlite:///library_lending.db'))
library_id = st.sidebar.text_input("Library ID (optional)") or None
expiring_days = st.sidebar.slider("Expiring within (days)", 1, 60, 14)

manager, ledger = get_services(db_url)
now = ledger.clock.now()

borrowings = load_all(ledger.list_borrowings, BorrowingFilter(library_id=library_id))
df = borrowings_frame(borrowings, now)
summary = lending_summary(df)

# Section 1: Borrowing states
st.header("📊 Borrowings")

col1, col2, col3, col4 = st.columns(4)
with col1:
    st.metric("Active", summary['active'])
with col2:
    st.metric("Overdue", summary['overdue'])
with col3:
    st.metric("Returned", summary['returned'])
with col4:
    st.metric("Outstanding Fines", f"{summary['fines_outstanding']:.2f}")

# Section 2: Overdue loans
st.markdown("---")
st.header("⏰ Overdue Loans")

overdue = df[df['state'] == 'overdue'][
    ['id', 'book_title', 'user_name', 'subscription_id', 'due_at', 'days_overdue', 'fine']
].sort_values('days_overdue', ascending=False)

if len(overdue) > 0:
    st.dataframe(overdue, use_container_width=True)
else:
    st.info("✅ No overdue loans!")

# Section 3: Subscriptions expiring soon
st.markdown("---")
st.header("🗓️ Subscriptions Expiring Soon")

subscriptions = load_all(manager.list_subscriptions, SubscriptionFilter(library_id=library_id, is_expired=False))
horizon = now + timedelta(days=expiring_days)
expiring = pd.DataFrame([
    {
        'id': str(s.id),
        'user': s.user.name if s.user else str(s.user_id),
        'membership': s.membership.name if s.membership else None,
        'library': s.membership.library.name if s.membership and s.membership.library else None,
        'expires_at': s.expires_at,
        'active_loan_limit': s.active_loan_limit,
        'loan_period': s.loan_period,
        'fine_per_day': float(s.fine_per_day),
    }
    for s in subscriptions if s.expires_at <= horizon
])

if len(expiring) > 0:
    st.dataframe(expiring.sort_values('expires_at'), use_container_width=True)
    st.caption(f"{len(expiring)} of {len(subscriptions)} live subscriptions expire within {expiring_days} days")
else:
    st.info(f"✅ No subscriptions expire within {expiring_days} days")

# Section 4: All borrowings
st.markdown("---")
st.header("📄 All Borrowings")
st.dataframe(df.sort_values('borrowed_at', ascending=False).head(50), use_container_width=True)
st.caption(f"Showing {min(50, len(df))} of {len(df)} records")
