"""
Connection test for the LLM tiers.

Runs the same minimal request as POST /llm/config/test against the stored
configuration (or a key given on the command line) and the local server,
then reports whether the on-device engine could run on this machine.

    python scripts/check_llm_config.py
    python scripts/check_llm_config.py --api-key gsk_... --model llama-3.3-70b-versatile
"""
import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv

# Make the aria_coach package importable when run from backend/
sys.path.insert(0, str(Path(__file__).parent.parent))

# Load environment variables from .env file
env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)
    print(f"Loaded environment from {env_path}")
else:
    print(f"Note: .env file not found at {env_path}")
    print("   Environment variables will be read from system environment")

from aria_coach.services.llm.config_store import config_from_credential, get_config_store, mask_api_key
from aria_coach.services.llm.invocation import get_llm_invoker
from aria_coach.services.llm.on_device import get_on_device_engine
from aria_coach.services.llm.registry import get_provider_resolver


async def check(api_key=None, model=None) -> bool:
    print("=" * 60)
    print("Testing LLM tiers")
    print("=" * 60)
    print()

    resolver = get_provider_resolver()
    invoker = get_llm_invoker()

    print("Step 1: Configured provider...")
    if api_key:
        config = config_from_credential(api_key)
        if model:
            config = config.model_copy(update={"model": model})
    else:
        config = resolver.normalize(get_config_store().load())

    configured_ok = False
    if config is None:
        print("[--] No provider configured (LLM_API_KEY or saved configuration)")
    else:
        print(f"   provider={config.provider} model={config.model} key={mask_api_key(config.api_key)}")
        result = await invoker.probe(resolver.resolve(config), config.api_key)
        configured_ok = result.success
        if result.success:
            print(f"[OK] {result.provider} answered in {result.latency_ms} ms")
        else:
            print(f"[X] {result.provider}: {result.error}")
    print()

    print("Step 2: Local server...")
    local = resolver.local_adapter()
    print(f"   base_url={local.base_url} model={local.default_model}")
    result = await invoker.probe(local, None)
    local_ok = result.success
    if result.success:
        print(f"[OK] Local server answered in {result.latency_ms} ms")
    else:
        print(f"[X] Local server: {result.error}")
    print()

    print("Step 3: On-device engine...")
    engine = get_on_device_engine()
    if engine.is_supported():
        print(f"[OK] GPU available, default model {engine.default_model_id}")
    else:
        print("[--] On-device engine unavailable (disabled or no GPU)")
    print()

    print("=" * 60)
    return configured_ok or local_ok


def main():
    parser = argparse.ArgumentParser(description="Check LLM provider connectivity")
    parser.add_argument("--api-key", help="Test this key instead of the stored configuration")
    parser.add_argument("--model", help="Model to test with --api-key")
    args = parser.parse_args()

    ok = asyncio.run(check(args.api_key, args.model))
    print("[OK] At least one remote tier is reachable" if ok else "[X] No remote tier is reachable")
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
