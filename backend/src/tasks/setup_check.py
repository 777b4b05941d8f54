"""
Database setup check.

Verifies that the Supabase project has the bookmarks table and that row-level
security rejects writes from anonymous callers. Prints the SQL to run when the
table is missing.

Usage:
    python -m tasks.setup_check

Exit status is 0 when the table exists, 1 when configuration or the table is
missing or the backend can't be reached.
"""
import asyncio
import logging
from dataclasses import dataclass, field

import httpx

from core.auth import UserSession
from core.config import Settings, get_settings
from schemas.bookmark import BookmarkCreate
from services.exceptions import BookmarkError, PersistenceError
from services.gateway import PostgrestGateway
from shared.api_errors import RLS_DENIED_CODE

logger = logging.getLogger(__name__)

# Owner id no real user has; used for the anonymous insert probe
PROBE_USER_ID = "00000000-0000-0000-0000-000000000000"

SETUP_SQL = """
-- Create bookmarks table
CREATE TABLE IF NOT EXISTS {table} (
  id UUID DEFAULT gen_random_uuid() PRIMARY KEY,
  created_at TIMESTAMP WITH TIME ZONE DEFAULT timezone('utc'::text, now()) NOT NULL,
  user_id UUID NOT NULL REFERENCES auth.users(id) ON DELETE CASCADE,
  title TEXT NOT NULL,
  url TEXT NOT NULL
);

-- Enable Row Level Security
ALTER TABLE {table} ENABLE ROW LEVEL SECURITY;

-- Drop existing policies (safe for re-running)
DROP POLICY IF EXISTS "Users can view their own bookmarks" ON {table};
DROP POLICY IF EXISTS "Users can insert their own bookmarks" ON {table};
DROP POLICY IF EXISTS "Users can delete their own bookmarks" ON {table};

-- Create RLS policies
CREATE POLICY "Users can view their own bookmarks"
  ON {table} FOR SELECT
  USING (auth.uid() = user_id);

CREATE POLICY "Users can insert their own bookmarks"
  ON {table} FOR INSERT
  WITH CHECK (auth.uid() = user_id);

CREATE POLICY "Users can delete their own bookmarks"
  ON {table} FOR DELETE
  USING (auth.uid() = user_id);

-- Enable Realtime
ALTER PUBLICATION supabase_realtime ADD TABLE {table};
""".strip()


@dataclass
class SetupReport:
    """Outcome of a setup check."""

    table_exists: bool = False
    rls_enforced: bool | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.table_exists and not self.errors


def setup_sql(settings: Settings) -> str:
    """Get the schema, policy and publication SQL for the configured table."""
    return SETUP_SQL.format(table=settings.bookmarks_table)


async def check_setup(client: httpx.AsyncClient, settings: Settings) -> SetupReport:
    """
    Probe the table and its insert policy using only the anon key.

    The anonymous insert must be refused by RLS; if it succeeds the policies
    are missing and the row is reported as a warning.
    """
    report = SetupReport()
    anonymous = UserSession(user_id=PROBE_USER_ID, access_token=settings.supabase_anon_key)
    gateway = PostgrestGateway(client, anonymous, settings)

    try:
        error = await gateway.probe()
    except httpx.TransportError as e:
        report.errors.append(f"Could not reach {settings.rest_url}: {e}")
        return report

    if error is not None:
        if error.is_missing_table:
            report.errors.append(f"Table '{settings.bookmarks_table}' does not exist")
        else:
            report.errors.append(f"Database error: {error.message}")
        return report
    report.table_exists = True

    try:
        await gateway.insert(BookmarkCreate(title="test", url="https://test.com"))
    except PersistenceError as e:
        if e.code == RLS_DENIED_CODE or "row-level security" in e.message:
            report.rls_enforced = True
        else:
            report.warnings.append(f"Unexpected error from insert probe: {e.message}")
    except BookmarkError as e:
        report.warnings.append(f"Unexpected error from insert probe: {e.message}")
    else:
        report.rls_enforced = False
        report.warnings.append(
            "Anonymous insert succeeded - row-level security policies are missing",
        )
    return report


def print_report(report: SetupReport, settings: Settings) -> None:
    """Print the outcome with remediation steps."""
    rule = "━" * 40
    if not report.table_exists:
        for error in report.errors:
            print(f"❌ {error}\n")
        if any("does not exist" in error for error in report.errors):
            print(rule)
            print("📝 TO FIX: Run this SQL in the Supabase Dashboard")
            print(rule + "\n")
            print("1. Go to: https://supabase.com/dashboard")
            print("2. Select your project")
            print("3. Click: SQL Editor (left sidebar)")
            print("4. Click: New Query")
            print("5. Copy and paste this SQL:\n")
            print(setup_sql(settings))
            print("\n6. Click: Run (or press Ctrl+Enter)")
            print("7. Run this check again to verify\n")
        return

    print(f"✅ {settings.bookmarks_table} table exists")
    if report.rls_enforced:
        print("✅ RLS policies are working correctly")
    for warning in report.warnings:
        print(f"⚠️  Warning: {warning}")

    print(f"\n{rule}")
    print("🎉 Database is configured" if report.ok else "❌ Database check failed")
    print(f"{rule}\n")
    print("Next steps:")
    print("  1. Make sure Google OAuth is configured in Supabase")
    print("  2. Export SUPABASE_ACCESS_TOKEN for a signed-in user")
    print("  3. Run: linkshelf list\n")


async def run_setup_check(settings: Settings) -> int:
    """Run the check and return the process exit status."""
    if not settings.is_configured:
        print("❌ Error: Missing environment variables!")
        print("\nMake sure your .env has:")
        print("  SUPABASE_URL=https://xxx.supabase.co")
        print("  SUPABASE_ANON_KEY=your_anon_key")
        return 1

    print("🔍 Checking database setup...\n")
    async with httpx.AsyncClient(timeout=settings.request_timeout) as client:
        report = await check_setup(client, settings)
    print_report(report, settings)
    return 0 if report.ok else 1


def main() -> None:
    """Entry point for running the setup check as a script."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    raise SystemExit(asyncio.run(run_setup_check(get_settings())))


if __name__ == "__main__":
    main()
