import argparse
import os

import httpx

from decision_recovery.services.llm import LLM_FALLBACK_MODELS, LLM_PRIMARY_MODEL, fetch_available_models


def main() -> int:
    parser = argparse.ArgumentParser(
        description="List Gemini models visible to the configured key and check the fallback chain."
    )
    parser.add_argument(
        "--api-key",
        default=None,
        help="Override the key. Defaults to GEMINI_API_KEY or GOOGLE_API_KEY.",
    )
    args = parser.parse_args()

    api_key = (args.api_key or os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY") or "").strip()
    if not api_key:
        print("No GEMINI_API_KEY or GOOGLE_API_KEY configured")
        return 1

    print(f"Checking models using API key ending in ...{api_key[-4:]}")
    try:
        available = fetch_available_models(api_key)
    except httpx.HTTPError as exc:
        print(f"Could not list models: {exc}")
        return 1

    print("Available models:")
    for name in available:
        print(f"  - {name}")

    print("Configured chain:")
    for name in [LLM_PRIMARY_MODEL, *LLM_FALLBACK_MODELS]:
        marker = "ok" if name in available else "missing"
        print(f"  {name}: {marker}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
