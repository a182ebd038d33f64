"""Log in from the console and write the session cache for the next server start.

Usage: python bin/login.py

Prompts for username, password and, when the account requires it, a
second-factor code. Up to three attempts are made for each step.
"""

import asyncio
import getpass
import sys
from pathlib import Path

# Add backend to path for imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "backend"))

from monitor.api.client import ApiClient
from monitor.api.models import LoginResultCode
from monitor.api.rate_limit import RateLimiter
from monitor.auth.manager import AuthSessionManager, AuthState
from monitor.auth.session_cache import FileSessionCache
from monitor.server.settings import MonitorSettings
from shared.logging import setup_logging

MAX_ATTEMPTS = 3


async def _login(auth: AuthSessionManager) -> bool:
    for attempt in range(1, MAX_ATTEMPTS + 1):
        username = input("Username: ").strip()
        password = getpass.getpass("Password: ")
        outcome = await auth.login(username, password)
        if outcome.code is LoginResultCode.INVALID_CREDENTIALS:
            print(f"{outcome.message} (attempt {attempt}/{MAX_ATTEMPTS})")
            continue
        if auth.current_state() is AuthState.FAILED:
            print(f"Login failed: {outcome.message}")
            return False
        break
    else:
        return False

    attempt = 0
    while auth.current_state() is AuthState.AWAITING_SECOND_FACTOR and attempt < MAX_ATTEMPTS:
        attempt += 1
        kind = auth.status().pending_second_factor
        code = input(f"Verification code ({kind}): ").strip()
        outcome = await auth.verify_second_factor(code)
        if outcome.code is LoginResultCode.INVALID_SECOND_FACTOR_CODE:
            print(f"{outcome.message} (attempt {attempt}/{MAX_ATTEMPTS})")
        elif auth.current_state() is AuthState.FAILED:
            print(f"Verification failed: {outcome.message}")
            return False

    return auth.has_active_session()


async def main() -> None:
    settings = MonitorSettings()
    setup_logging()
    cache = FileSessionCache(settings.session_cache_path)
    client = ApiClient(
        RateLimiter(),
        base_url=settings.api_base_url,
        user_agent=settings.user_agent,
        timeout=settings.request_timeout_seconds,
    )
    try:
        auth = AuthSessionManager(client, cache)
        if not await _login(auth):
            print("Not logged in.")
            sys.exit(1)
    finally:
        await client.aclose()

    print(f"Logged in. Session cached at {cache.file_path}")
    print("Set cache_session: true in the accounts config so the server picks it up.")


if __name__ == "__main__":
    asyncio.run(main())
