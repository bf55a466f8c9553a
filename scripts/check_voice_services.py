#!/usr/bin/env python3
"""
Voice Service Connectivity Diagnostics

Checks that the configured ElevenLabs and OpenAI credentials work before a
live call: lists voices, synthesizes a short phrase and asks the chat model
for a one-token reply. Soniox uses a websocket and is only checked for a key.

Run: python scripts/check_voice_services.py
"""

import sys
from pathlib import Path
from typing import Dict, Optional

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import requests

from barber_voice.config import settings

TIMEOUT_S = 15


def check_request(method: str, url: str, headers: Dict[str, str], json_data: Optional[dict] = None) -> dict:
    """
    Send one request and summarize the response.

    Returns:
        dict with status_code, elapsed_ms, bytes and error (if any)
    """
    try:
        response = requests.request(method, url, headers=headers, json=json_data, timeout=TIMEOUT_S)
    except requests.RequestException as e:
        return {"status_code": None, "elapsed_ms": None, "bytes": 0, "error": str(e)}

    result = {
        "status_code": response.status_code,
        "elapsed_ms": round(response.elapsed.total_seconds() * 1000),
        "bytes": len(response.content),
        "error": None,
    }
    if response.status_code >= 300:
        try:
            error_data = response.json()
            detail = error_data.get("error") or error_data.get("detail") or response.text[:200]
            result["error"] = detail if isinstance(detail, str) else str(detail)[:200]
        except ValueError:
            result["error"] = response.text[:200]
    return result


def print_result(name: str, result: dict) -> bool:
    """Print one pass/fail line; returns True on success."""
    status = result["status_code"]
    if status is not None and status < 300:
        print(f"  [PASS] {name:<28} {status}  {result['elapsed_ms']} ms, {result['bytes']} bytes")
        return True
    if status == 401:
        print(f"  [FAIL] {name:<28} AUTHENTICATION FAILED (401)")
    elif status == 429:
        print(f"  [FAIL] {name:<28} RATE LIMITED (429)")
    elif status is None:
        print(f"  [FAIL] {name:<28} no response")
    else:
        print(f"  [FAIL] {name:<28} UNEXPECTED ({status})")
    if result.get("error"):
        print(f"         {result['error']}")
    return False


def check_elevenlabs() -> bool:
    eleven = settings.elevenlabs
    if not eleven.api_key:
        print("  [SKIP] ElevenLabs                   ELEVENLABS_API_KEY is not set")
        return False

    headers = {"xi-api-key": eleven.api_key}
    voices = check_request("GET", f"{eleven.base_url.rstrip('/')}/voices", headers)
    ok = print_result("ElevenLabs voices", voices)

    tts = check_request(
        "POST",
        f"{eleven.stream_url}?output_format={eleven.output_format}",
        {**headers, "Content-Type": "application/json", "Accept": "audio/*"},
        {"text": "Здравейте!", "model_id": eleven.model_id},
    )
    return print_result(f"ElevenLabs TTS ({eleven.voice_id})", tts) and ok


def check_openai() -> bool:
    openai = settings.openai
    if not openai.api_key:
        print("  [SKIP] OpenAI                       OPENAI_API_KEY is not set")
        return False

    result = check_request(
        "POST",
        openai.chat_url,
        {"Authorization": f"Bearer {openai.api_key}", "Content-Type": "application/json"},
        {
            "model": openai.model,
            "messages": [{"role": "user", "content": "Hi"}],
            "max_tokens": 1,
        },
    )
    return print_result(f"Chat completions ({openai.model})", result)


def check_soniox() -> bool:
    if settings.soniox.is_configured:
        print(f"  [PASS] {'Soniox key':<28} set ({settings.soniox.url})")
        return True
    print("  [FAIL] Soniox key                   SONIOX_API_KEY is not set")
    return False


def check_all_services() -> int:
    """Run every check; returns a process exit code."""
    print("=" * 60)
    print("VOICE SERVICE DIAGNOSTICS")
    print("=" * 60)
    print(f"Shop: {settings.shop.name} ({settings.shop.shop_id})")
    print(f"Providers: stt={settings.session.stt_provider} "
          f"tts={settings.session.tts_provider} llm={settings.session.llm_provider}")
    print("-" * 60)

    results = [check_soniox(), check_elevenlabs(), check_openai()]

    print("-" * 60)
    passed = sum(results)
    print(f"{passed}/{len(results)} services reachable")
    return 0 if all(results) else 1


if __name__ == "__main__":
    sys.exit(check_all_services())
