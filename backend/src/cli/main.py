"""
Bookmark CLI.

Usage:
    SUPABASE_ACCESS_TOKEN=... linkshelf list
    SUPABASE_ACCESS_TOKEN=... linkshelf add "Python docs" https://docs.python.org/3/
    SUPABASE_ACCESS_TOKEN=... linkshelf delete <id>
    SUPABASE_ACCESS_TOKEN=... linkshelf watch

Exit status: 0 on success, 1 when an operation fails, 2 when sign-in is required.
"""
import argparse
import asyncio
import logging
import sys
from typing import TextIO

import httpx

from core.auth import EnvSessionProvider
from core.config import Settings, get_settings
from schemas.bookmark import Bookmark
from services.bookmark_session import BookmarkSession, create_bookmark_session
from services.exceptions import NotAuthenticatedError, PersistenceError, ValidationError

EXIT_FAILED = 1
EXIT_SIGN_IN = 2


def format_bookmark(bookmark: Bookmark) -> str:
    added = bookmark.created_at.date().isoformat()
    return f"{bookmark.id}  {bookmark.title}\n    {bookmark.url}  (added {added})"


class ConsoleListener:
    """Prints notices; in watch mode also reprints the list on every change."""

    def __init__(self, out: TextIO | None = None, err: TextIO | None = None) -> None:
        self.out = out or sys.stdout
        self.err = err or sys.stderr
        self.live = False

    def on_bookmarks_changed(self, bookmarks: tuple[Bookmark, ...]) -> None:
        if self.live:
            print_bookmarks(bookmarks, self.out)

    def on_error(self, error: PersistenceError) -> None:
        print(f"Error: {error}", file=self.err)

    def on_sign_in_required(self, error: NotAuthenticatedError) -> None:
        print(
            f"Sign in required ({error}). "
            f"Sign in with Google and export {EnvSessionProvider.env_var}.",
            file=self.err,
        )


def print_bookmarks(bookmarks: tuple[Bookmark, ...], out: TextIO) -> None:
    print(f"Your Bookmarks ({len(bookmarks)})", file=out)
    if not bookmarks:
        print("No bookmarks yet", file=out)
    for bookmark in bookmarks:
        print(format_bookmark(bookmark), file=out)


async def run_command(
    args: argparse.Namespace,
    session: BookmarkSession,
    listener: ConsoleListener,
) -> int:
    """Run one CLI command inside a bookmark session and return the exit status."""
    try:
        async with session:
            if args.command == "list":
                print_bookmarks(session.bookmarks, listener.out)
            elif args.command == "add":
                bookmark = await session.add_bookmark(args.title, args.url)
                if bookmark is not None:
                    print(f"Added {bookmark.id}", file=listener.out)
            elif args.command == "delete":
                await session.remove_bookmark(args.id)
                print(f"Deleted {args.id}", file=listener.out)
            elif args.command == "watch":
                print_bookmarks(session.bookmarks, listener.out)
                listener.live = True
                await asyncio.Event().wait()
    except ValidationError as e:
        print(f"Invalid {e.field}: {e.message}", file=listener.err)
        return EXIT_FAILED
    except PersistenceError:
        # Already printed by the listener
        return EXIT_FAILED
    except NotAuthenticatedError:
        return EXIT_SIGN_IN
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="linkshelf", description="Manage your bookmarks.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List bookmarks, newest first")

    add_parser = subparsers.add_parser("add", help="Add a bookmark")
    add_parser.add_argument("title")
    add_parser.add_argument("url")

    delete_parser = subparsers.add_parser("delete", help="Delete a bookmark")
    delete_parser.add_argument("id")

    subparsers.add_parser("watch", help="Show bookmarks and follow live changes")
    return parser


async def _main(args: argparse.Namespace, settings: Settings) -> int:
    listener = ConsoleListener()
    async with httpx.AsyncClient(timeout=settings.request_timeout) as client:
        session = create_bookmark_session(client, settings, EnvSessionProvider(settings), listener)
        return await run_command(args, session, listener)


def main() -> None:
    """CLI entry point."""
    args = build_parser().parse_args()
    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose or settings.dev_mode else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    if not settings.is_configured:
        print("SUPABASE_URL and SUPABASE_ANON_KEY must be set (see .env.example)", file=sys.stderr)
        raise SystemExit(EXIT_FAILED)
    try:
        raise SystemExit(asyncio.run(_main(args, settings)))
    except KeyboardInterrupt:
        raise SystemExit(0)
