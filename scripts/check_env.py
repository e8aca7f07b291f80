#!/usr/bin/env python3
"""
Check that API keys from .env are valid and working.

Loads .env from the project root (parent of scripts/), then runs a minimal
request against each configured provider. Use this before a generation run to
avoid "401 Unauthorized" errors halfway through a deck.

GEMINI_API_KEY is required. FALLBACK_API_KEY is optional: without it the
fallback provider is skipped, which is not an error.

Usage:
    python scripts/check_env.py
    # or from project root:
    python -m scripts.check_env
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import httpx
from dotenv import load_dotenv

# Project root = parent of scripts/
PROJECT_ROOT = Path(__file__).resolve().parent.parent
ENV_FILE = PROJECT_ROOT / ".env"

DEFAULT_FALLBACK_BASE = "https://dashscope-intl.aliyuncs.com/compatible-mode/v1"

ENV_KEYS = (
    "GEMINI_API_KEY",
    "INTERACTIONS_API_BASE",
    "FALLBACK_API_KEY",
    "FALLBACK_API_BASE",
    "FALLBACK_MODEL",
)


def load_env() -> bool:
    """Load .env into os.environ (override=True so we test keys from .env). Returns True if file exists."""
    if not ENV_FILE.exists():
        print(f"[FAIL] No .env found at {ENV_FILE}")
        return False
    in_shell = [k for k in ENV_KEYS if os.environ.get(k)]
    if in_shell:
        print("[WARN] These are set in your shell and override .env when you run a generation:")
        for k in in_shell:
            print(f"       {k}")
        print("       To use .env instead, run: unset " + " ".join(in_shell))
        print()
    load_dotenv(ENV_FILE, override=True)
    return True


def mask(key: str) -> str:
    """Mask key for display."""
    val = os.environ.get(key, "")
    if not val or len(val) < 8:
        return "(not set)" if not val else "(too short)"
    return f"{val[:6]}...{val[-4:]}"


async def check_gemini() -> tuple[bool, str]:
    """Test GEMINI_API_KEY with a minimal generateContent call."""
    key = os.environ.get("GEMINI_API_KEY", "").strip()
    if not key:
        return False, "GEMINI_API_KEY not set"
    try:
        async with httpx.AsyncClient(timeout=15.0) as client:
            r = await client.post(
                "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash:generateContent",
                headers={"x-goog-api-key": key},
                json={"contents": [{"parts": [{"text": "Say OK"}]}], "generationConfig": {"maxOutputTokens": 5}},
            )
            if r.status_code == 200:
                return True, "OK"
            if r.status_code == 403:
                return False, "Invalid key or API not enabled (403)"
            if r.status_code == 401:
                return False, "Invalid or expired key (401)"
            if r.status_code == 429:
                return False, "Rate limited or quota exhausted (429)"
            return False, f"HTTP {r.status_code}: {r.text[:200]}"
    except httpx.HTTPError as e:
        return False, str(e)


async def check_fallback() -> tuple[bool, str]:
    """Test FALLBACK_API_KEY against the OpenAI-compatible /chat/completions endpoint."""
    key = os.environ.get("FALLBACK_API_KEY", "").strip()
    if not key:
        return True, "FALLBACK_API_KEY not set (fallback provider will be skipped)"
    base = (os.environ.get("FALLBACK_API_BASE", "") or DEFAULT_FALLBACK_BASE).strip().rstrip("/")
    model = os.environ.get("FALLBACK_MODEL", "") or "qwen-plus"
    try:
        async with httpx.AsyncClient(timeout=15.0) as client:
            r = await client.post(
                f"{base}/chat/completions",
                headers={"Authorization": f"Bearer {key}", "Content-Type": "application/json"},
                json={
                    "model": model,
                    "max_tokens": 5,
                    "messages": [{"role": "user", "content": "Say OK"}],
                },
            )
            if r.status_code == 200:
                return True, "OK"
            if r.status_code == 401:
                return False, "Invalid or expired key (401)"
            if r.status_code == 404:
                return False, f"Model '{model}' not found at {base} (404)"
            return False, f"HTTP {r.status_code}: {r.text[:200]}"
    except httpx.HTTPError as e:
        return False, str(e)


def warn_duplicate_keys_in_env() -> None:
    """Warn if any ENV_KEYS appear more than once in .env (last occurrence wins with dotenv)."""
    if not ENV_FILE.exists():
        return
    seen: dict[str, list[int]] = {}
    with open(ENV_FILE) as f:
        for i, line in enumerate(f, 1):
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key = line.partition("=")[0].strip()
            if key in ENV_KEYS:
                seen.setdefault(key, []).append(i)
    dupes = {k: v for k, v in seen.items() if len(v) > 1}
    if dupes:
        print("[WARN] Duplicate keys in .env (the last value wins; remove duplicates to avoid using an old key):")
        for k, lines in dupes.items():
            print(f"       {k} on lines {lines}")
        print()


async def main() -> int:
    print("Loading .env from", ENV_FILE)
    warn_duplicate_keys_in_env()
    if not load_env():
        return 1

    print()
    checks = [
        ("GEMINI_API_KEY (primary provider)", mask("GEMINI_API_KEY"), check_gemini),
        ("FALLBACK_API_KEY (fallback provider)", mask("FALLBACK_API_KEY"), check_fallback),
    ]

    failed = 0
    for name, masked, coro in checks:
        ok, msg = await coro()
        status = "[OK]  " if ok else "[FAIL]"
        if not ok:
            failed += 1
        print(f"  {status} {name}")
        print(f"         Key: {masked}")
        if not ok or msg != "OK":
            print(f"         → {msg}")
        print()

    if failed:
        print("Fix the failing keys above (e.g. create new keys, enable APIs).")
        print("Then run: python scripts/check_env.py")
        return 1
    print("All configured keys are valid.")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
