import argparse
import logging
import sys

import pandas as pd
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import transactions_frame
from config import configure_logging, load_config
from store import FetchFailure, TransactionStore
from transactions import TIMELINES, build_income_report, change_badge, format_currency, trend_label

logger = logging.getLogger(__name__)


def engine():
    return create_engine(load_config()['SQLALCHEMY_DATABASE_URI'])


def store_for(session) -> TransactionStore:
    config = load_config()
    return TransactionStore(
        session,
        timeout_ms=config['REPORT_FETCH_TIMEOUT_MS'],
        retries=config['REPORT_FETCH_RETRIES'],
    )


def report(facility_id: int, timeline: str, plan: str, symbol: str) -> int:
    with Session(engine()) as session:
        try:
            r = build_income_report(store_for(session), facility_id, timeline, plan)
        except FetchFailure as exc:
            print('Report failed:', exc)
            return 1
    s = r.summary
    print(f"Facility {facility_id} · {r.window.timeline} ({r.window.start:%Y-%m-%d %H:%M} → {r.window.end:%Y-%m-%d %H:%M})")
    print('Income:          ', format_currency(s.income, symbol), change_badge(s.percent_change)['label'])
    print('Previous period: ', format_currency(s.previous_income, symbol))
    print('Pending balance: ', format_currency(s.total_pending_balance, symbol))
    print('Trend:           ', trend_label(s.trend)['label'])
    df = pd.DataFrame([p.to_dict() for p in s.daily_earnings], columns=['date', 'amount'])
    if not df.empty:
        print(df.to_string(index=False))
    return 0


def export(facility_id: int, timeline: str, plan: str, out: str) -> int:
    with Session(engine()) as session:
        try:
            r = build_income_report(store_for(session), facility_id, timeline, plan)
        except FetchFailure as exc:
            print('Export failed:', exc)
            return 1
    transactions_frame(r.transactions).to_excel(out, index=False)
    print('Exported', len(r.transactions), 'transactions to', out)
    return 0


def check_db() -> int:
    """Connect and print row counts of the main tables."""
    url = load_config()['SQLALCHEMY_DATABASE_URI']
    print(f"Database URL: {url[:50]}...")
    try:
        with engine().connect() as conn:
            for table in ('facility', 'facility_trainer', 'member', 'plan', 'transactions', 'attendance'):
                count = conn.execute(text(f'SELECT COUNT(*) FROM "{table}"')).scalar()
                print(f"  {table}: {count}")
    except SQLAlchemyError as e:
        logger.error("Database check failed: %s", e)
        print('Connection failed:', e)
        return 1
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Facility income reports')
    sub = parser.add_subparsers(dest='cmd')
    r = sub.add_parser('report')
    r.add_argument('--facility', type=int, required=True)
    r.add_argument('--timeline', choices=TIMELINES, default='last7Days')
    r.add_argument('--plan', default='all')
    r.add_argument('--symbol', default=load_config()['CURRENCY_SYMBOL'])
    e = sub.add_parser('export')
    e.add_argument('--facility', type=int, required=True)
    e.add_argument('--timeline', choices=TIMELINES, default='allTime')
    e.add_argument('--plan', default='all')
    e.add_argument('--out', default='transactions.xlsx')
    sub.add_parser('check-db')
    args = parser.parse_args(argv)
    configure_logging(load_config()['LOG_LEVEL'])
    if args.cmd == 'report':
        return report(args.facility, args.timeline, args.plan, args.symbol)
    if args.cmd == 'export':
        return export(args.facility, args.timeline, args.plan, args.out)
    if args.cmd == 'check-db':
        return check_db()
    parser.print_help()
    return 0


if __name__ == '__main__':
    sys.exit(main())
