import asyncio
import logging
import sys
from typing import Dict, Optional, Tuple

import httpx

from callwatch.config import settings

logger = logging.getLogger("validate_keys")

CheckResult = Tuple[bool, Optional[str]]


def configuration_status() -> Dict[str, bool]:
    """Which provider settings are present (no network access)."""
    return {
        "twilio_account_sid": bool(settings.twilio_account_sid),
        "twilio_auth_token": bool(settings.twilio_auth_token),
        "twilio_phone_number": bool(settings.twilio_phone_number),
        "assemblyai_api_key": bool(settings.assemblyai_api_key),
        "public_base_url": bool(settings.public_base_url),
        "default_emergency_contact": bool(settings.default_emergency_contact),
        "api_key": bool(settings.api_key),
    }


def log_configuration_warnings():
    for name, present in configuration_status().items():
        if not present:
            logger.warning("%s is not set; operations that need it will be refused", name.upper())


async def validate_twilio() -> CheckResult:
    if not settings.twilio_configured:
        return False, "Not set"
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.get(
                f"https://api.twilio.com/2010-04-01/Accounts/{settings.twilio_account_sid}.json",
                auth=(settings.twilio_account_sid, settings.twilio_auth_token),
            )
        if resp.status_code == 200:
            return True, None
        return False, f"{resp.status_code} {resp.reason_phrase}"
    except Exception as e:
        return False, str(e)


async def validate_assemblyai() -> CheckResult:
    if not settings.assemblyai_api_key:
        return False, "Not set"
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.get(
                "https://api.assemblyai.com/v2/transcript",
                params={"limit": 1},
                headers={"Authorization": settings.assemblyai_api_key},
            )
        if resp.status_code == 200:
            return True, None
        if resp.status_code == 401:
            return False, "Invalid API key"
        return False, f"{resp.status_code} {resp.reason_phrase}"
    except Exception as e:
        return False, str(e)


async def validate_redis() -> CheckResult:
    try:
        from redis.asyncio import Redis

        r = Redis.from_url(settings.redis_url, socket_timeout=5)
        try:
            await r.ping()
        finally:
            await r.aclose()
        return True, None
    except Exception as e:
        return False, str(e)


async def validate_all_keys() -> Dict[str, dict]:
    names = ("twilio", "assemblyai", "redis")
    results = await asyncio.gather(validate_twilio(), validate_assemblyai(), validate_redis())
    report = {}
    for name, (ok, error) in zip(names, results):
        report[name] = {"status": "ok" if ok else "error", "error": error}
        if ok:
            logger.info("%s check passed", name)
        else:
            logger.warning("%s check failed: %s", name, error)
    return report


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    report = asyncio.run(validate_all_keys())
    sys.exit(0 if all(r["status"] == "ok" for r in report.values()) else 1)
