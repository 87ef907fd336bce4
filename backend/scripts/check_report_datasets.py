#!/usr/bin/env python3
"""
Diagnostic script to inspect report_dataset_metadata and the performance tables.
Helps debug datasets that are stuck, failing or never refreshed.

Run from backend directory:
  python scripts/check_report_datasets.py [ACCOUNT_ID]
"""

import asyncio
import sys
from pathlib import Path

# Ensure backend root is on path
backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from sqlalchemy import text
from app.database import engine


async def main(account_id: str | None = None):
    params = {"aid": account_id} if account_id else {}
    account_filter = "WHERE account_id = :aid" if account_id else ""

    async with engine.begin() as conn:
        acct_result = await conn.execute(text(
            "SELECT ads_account_id, country_code, profile_id, enabled FROM advertiser_accounts ORDER BY ads_account_id"
        ))
        accounts = acct_result.fetchall()
        print("=== ADVERTISER ACCOUNTS ===")
        for a in accounts:
            print(f"  {a[0]}  country={a[1]}, profile_id={a[2]}, enabled={a[3]}")
        if not accounts:
            print("  (no accounts)")
            return

        # Status counts per dataset pair
        status_result = await conn.execute(text(f"""
            SELECT account_id, aggregation, entity_type, status, COUNT(*),
                   SUM(CASE WHEN refreshing THEN 1 ELSE 0 END),
                   SUM(CASE WHEN report_id IS NOT NULL THEN 1 ELSE 0 END)
            FROM report_dataset_metadata
            {account_filter}
            GROUP BY account_id, aggregation, entity_type, status
            ORDER BY account_id, aggregation, entity_type, status
        """), params)
        print("\n=== DATASETS BY STATUS ===")
        for r in status_result.fetchall():
            print(f"  {r[0]} {r[1]}/{r[2]} {r[3]}: rows={r[4]}, refreshing={r[5]}, in_flight={r[6]}")

        # Datasets held by a worker for a long time
        stuck_result = await conn.execute(text(f"""
            SELECT uid, account_id, aggregation, entity_type, period_start, refreshing_since
            FROM report_dataset_metadata
            {account_filter + " AND" if account_filter else "WHERE"} refreshing
              AND refreshing_since < (now() AT TIME ZONE 'utc') - interval '30 minutes'
            ORDER BY refreshing_since
            LIMIT 20
        """), params)
        stuck = stuck_result.fetchall()
        print("\n=== STUCK REFRESHING (> 30 min) ===")
        if stuck:
            for r in stuck:
                print(f"  uid={r[0]}, {r[1]} {r[2]}/{r[3]} {r[4]}, since={r[5]}")
        else:
            print("  (none)")

        # Recent errors
        err_result = await conn.execute(text(f"""
            SELECT uid, account_id, aggregation, entity_type, period_start, status, LEFT(error, 200)
            FROM report_dataset_metadata
            {account_filter + " AND" if account_filter else "WHERE"} error IS NOT NULL
            ORDER BY updated_at DESC
            LIMIT 20
        """), params)
        errors = err_result.fetchall()
        print("\n=== RECENT ERRORS ===")
        if errors:
            for r in errors:
                print(f"  uid={r[0]}, {r[1]} {r[2]}/{r[3]} {r[4]} [{r[5]}]: {r[6]}")
        else:
            print("  (none)")

        # Aggregates written per day
        perf_result = await conn.execute(text(f"""
            SELECT bucket_date, entity_type, COUNT(*), SUM(spend)::numeric(12,2), SUM(sales)::numeric(12,2)
            FROM performance_daily
            {account_filter}
            GROUP BY bucket_date, entity_type
            ORDER BY bucket_date DESC
            LIMIT 20
        """), params)
        perf = perf_result.fetchall()
        print("\n=== PERFORMANCE_DAILY (recent dates) ===")
        if perf:
            for r in perf:
                print(f"  date={r[0]}, {r[1]}: rows={r[2]}, spend={r[3]}, sales={r[4]}")
        else:
            print("  (no rows)")

    print("\nDone.")


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None))
