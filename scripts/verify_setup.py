#!/usr/bin/env python3
"""
Setup Verification Script

Checks configuration, backing services and calendar provider credentials
before the assistant is started. Run it after filling in your .env file.

Usage:
    python scripts/verify_setup.py
"""

import asyncio
import os
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Load environment variables
from dotenv import load_dotenv
load_dotenv()


def print_header(title: str) -> None:
    """Print section header."""
    print(f"\n{'='*60}")
    print(f" {title}")
    print(f"{'='*60}")


def print_result(name: str, success: bool, message: str = "") -> None:
    """Print check result."""
    status = "[PASS]" if success else "[FAIL]"
    color = "\033[92m" if success else "\033[91m"
    reset = "\033[0m"
    msg = f" - {message}" if message else ""
    print(f"  {color}{status}{reset} {name}{msg}")


def mask(value: str) -> str:
    return f"{value[:6]}...{value[-4:]}" if len(value) > 12 else "***"


def check_env_file() -> bool:
    """Check if .env file exists."""
    exists = (project_root / ".env").exists()
    print_result(".env file", exists, "Found" if exists else "Not found, using process environment")
    return exists


def check_required_vars() -> dict[str, bool]:
    """Check variables the assistant cannot run without."""
    results = {}

    required = [
        ("ANTHROPIC_API_KEY", "Required for intent classification"),
        ("DATABASE_URL", "Required for the credential table"),
    ]

    for var, description in required:
        value = os.getenv(var, "")
        if not value:
            print_result(var, False, f"Not set - {description}")
            results[var] = False
        else:
            shown = mask(value) if "KEY" in var else value.split("@")[-1]
            print_result(var, True, f"Set ({shown})")
            results[var] = True

    return results


def check_providers() -> list[str]:
    """Check OAuth app credentials for each calendar provider."""
    configured = []

    for name, prefix in (("Google Calendar", "GOOGLE"), ("Microsoft Calendar", "MICROSOFT")):
        client_id = os.getenv(f"{prefix}_CLIENT_ID", "")
        client_secret = os.getenv(f"{prefix}_CLIENT_SECRET", "")

        if client_id and client_secret:
            print_result(name, True, f"Client {mask(client_id)}")
            configured.append(prefix.lower())
        else:
            print_result(name, False, f"{prefix}_CLIENT_ID / {prefix}_CLIENT_SECRET not set")

    return configured


def check_optional_vars() -> None:
    """Show optional settings and their effective values."""
    optional = [
        ("APP_ENV", "development"),
        ("REDIS_URL", "redis://localhost:6379/0"),
        ("PROVIDER_ORDER", "google,microsoft"),
        ("BUSINESS_HOURS_START", "09:00"),
        ("BUSINESS_HOURS_END", "17:00"),
        ("DEFAULT_TIMEZONE", "UTC"),
    ]

    for var, default in optional:
        print_result(var, True, os.getenv(var, default))


async def check_postgres() -> bool:
    """Verify PostgreSQL connection."""
    try:
        from calendar_assistant.infra.database import check_db_health
        healthy = await check_db_health()
        print_result("PostgreSQL", healthy, "Connection successful" if healthy else "Connection failed")
        return healthy

    except Exception as e:
        print_result("PostgreSQL", False, str(e)[:50])
        return False


async def check_redis() -> bool:
    """Verify Redis connection."""
    try:
        from calendar_assistant.infra.redis import check_redis_health
        healthy = await check_redis_health()
        print_result(
            "Redis",
            healthy,
            "Connection successful" if healthy else "Unavailable (conversations kept in memory)",
        )
        return healthy

    except Exception as e:
        print_result("Redis", False, str(e)[:50])
        return False


async def check_anthropic() -> bool:
    """Verify the Anthropic key with a minimal classification call."""
    try:
        from calendar_assistant.infra.claude import ClaudeClient

        client = ClaudeClient()
        await client.generate(prompt="Hi", max_tokens=5, use_fallback_on_error=False)
        await client.close()

        print_result("Anthropic API", True, "Key validated successfully")
        return True

    except Exception as e:
        error_msg = str(e)
        if "authentication" in error_msg.lower() or "api_key" in error_msg.lower():
            print_result("Anthropic API", False, "Invalid API key")
        elif "rate" in error_msg.lower():
            print_result("Anthropic API", True, "Key valid (rate limited)")
            return True
        else:
            print_result("Anthropic API", False, error_msg[:50])
        return False


async def check_provider_endpoints(providers: list[str]) -> None:
    """Check the provider APIs are reachable from this host."""
    import httpx

    from calendar_assistant.config import settings

    endpoints = {
        "google": ("Google Calendar API", settings.google_calendar_base_url),
        "microsoft": ("Microsoft Graph", settings.microsoft_graph_base_url),
    }

    async with httpx.AsyncClient(timeout=5.0) as client:
        for provider in providers:
            name, url = endpoints[provider]
            try:
                # Unauthenticated calls answer 401/404; any HTTP reply means reachable
                response = await client.get(url)
                print_result(name, True, f"Reachable ({response.status_code})")
            except httpx.HTTPError:
                print_result(name, False, f"Not reachable at {url}")


async def main():
    """Run all verification checks."""
    print("\n" + "="*60)
    print(" Calendar Assistant - Setup Verification")
    print("="*60)

    critical_failed = False

    print_header("Environment File")
    check_env_file()

    print_header("Required Environment Variables")
    var_results = check_required_vars()
    if not all(var_results.values()):
        critical_failed = True

    print_header("Calendar Providers")
    providers = check_providers()
    if not providers:
        critical_failed = True

    print_header("Optional Settings")
    check_optional_vars()

    print_header("Service Connections")

    if var_results.get("DATABASE_URL"):
        if not await check_postgres():
            critical_failed = True
    else:
        print_result("PostgreSQL", False, "Skipped - DATABASE_URL not set")

    # Redis failure is non-critical (in-memory conversation state)
    await check_redis()

    if var_results.get("ANTHROPIC_API_KEY"):
        if not await check_anthropic():
            critical_failed = True
    else:
        print_result("Anthropic API", False, "Skipped - ANTHROPIC_API_KEY not set")

    await check_provider_endpoints(providers)

    print_header("Summary")

    if critical_failed:
        print("\n  \033[91mCRITICAL: Some required checks failed.\033[0m")
        print("  Please fix the issues above before running the application.")
        print()
        return 1

    print("\n  \033[92mAll required checks passed!\033[0m")
    print("  You can start the application with:")
    print("    uvicorn calendar_assistant.main:app --reload")
    print()
    return 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
