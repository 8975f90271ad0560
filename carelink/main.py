"""Command-line entry point: sign in, sync notifications, and follow pushes."""

import argparse
import asyncio
import getpass
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from carelink.client import CareLinkClient
from carelink.config import ClientSettings, get_settings
from carelink.logging_config import configure_logging
from carelink.models import Notification
from carelink.notifications.classifier import classify

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(settings: ClientSettings | None = None) -> AsyncIterator[CareLinkClient]:
    """Build the client at startup, stop background work at shutdown."""
    settings = settings or get_settings()
    configure_logging("carelink-client", settings.env)
    client = CareLinkClient.create(settings)
    try:
        yield client
    finally:
        await client.close()


def _render(notification: Notification) -> str:
    kind = classify(notification)
    marker = " " if notification.read else "*"
    return f"{marker} [{kind.priority:<6}] {notification.title}: {notification.message}"


async def run(username: str | None, password: str | None, remember_me: bool, follow: bool) -> int:
    async with lifespan() as client:
        session = await client.restore()
        if session is None:
            if not username:
                logger.error("No stored session; --username is required")
                return 2
            result = await client.login(
                {"username": username, "password": password or getpass.getpass()},
                remember_me=remember_me,
            )
            if not result.ok:
                print(result.message)
                return 1
            print(f"Signed in, landing on {result.route}")

        await client.notifications.refresh_from_server()
        for notification in client.notifications.notifications:
            print(_render(notification))
        print(f"{client.notifications.unread_count} unread")

        if follow:
            client.notifications.subscribe(
                lambda items: print(_render(items[0])) if items else None
            )
            await asyncio.Event().wait()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="CareLink session and notification client")
    parser.add_argument("--username")
    parser.add_argument("--password")
    parser.add_argument("--remember-me", action="store_true")
    parser.add_argument("--follow", action="store_true", help="keep printing realtime notifications")
    args = parser.parse_args()
    try:
        raise SystemExit(asyncio.run(run(args.username, args.password, args.remember_me, args.follow)))
    except KeyboardInterrupt:
        raise SystemExit(130)


if __name__ == "__main__":
    main()
