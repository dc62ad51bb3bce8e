"""
Credential management for upstream APIs.

Usage:
    from pulsedata.config.secrets import get_credential

    # Raises MissingAPIKeyError if HDX_API_KEY is unset or blank
    key = get_credential("HDX_API_KEY")

CLI check:
    python -m pulsedata.config.secrets --check
"""

import argparse
import os
import sys
from pathlib import Path
from typing import Dict, Iterable, Optional

from dotenv import load_dotenv

# Walk up from this file to the repo root: pulsedata/config/secrets.py -> repo root
_repo_root = Path(__file__).resolve().parent.parent.parent
_env_path = _repo_root / ".env"

if _env_path.exists():
    load_dotenv(_env_path)
else:
    load_dotenv()


# Every credential an adapter may ask for. All are optional: a missing key
# makes the corresponding adapter skip, never fail the run.
KNOWN_CREDENTIALS = {
    "HDX_API_KEY": "HDX Humanitarian API (hdx adapter)",
}


class MissingAPIKeyError(Exception):
    """Raised when a required API key is not configured."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"{name} not found. Copy .env.example to .env and add your key."
        )


def get_credential(name: str) -> str:
    """
    Get a credential from the environment.

    Args:
        name: Environment variable name

    Returns:
        str: The stripped credential value

    Raises:
        MissingAPIKeyError: If the variable is unset or blank
    """
    value = os.environ.get(name, "").strip()
    if not value:
        raise MissingAPIKeyError(name)
    return value


def get_optional_credential(name: str) -> Optional[str]:
    """Return the credential or None when it is not configured."""
    try:
        return get_credential(name)
    except MissingAPIKeyError:
        return None


def check_keys(names: Optional[Iterable[str]] = None) -> Dict[str, str]:
    """
    Check which credentials are configured.

    Returns:
        dict: Status of each key ("OK" or "MISSING")
    """
    names = list(names) if names is not None else list(KNOWN_CREDENTIALS)
    return {
        name: "OK" if get_optional_credential(name) else "MISSING"
        for name in names
    }


def _cli_check() -> int:
    status = check_keys()

    for key_name, key_status in status.items():
        print(f"{key_name}: {key_status} ({KNOWN_CREDENTIALS.get(key_name, '')})")

    missing = [k for k, v in status.items() if v == "MISSING"]
    if missing:
        print("\nMissing keys only skip their adapter. To configure them:")
        print("  1. Copy .env.example to .env")
        print("  2. Add your API keys to .env")
        return 1

    print("\nAll keys configured.")
    return 0


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(
        description="Check upstream API credential configuration"
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Check if API keys are configured"
    )
    args = parser.parse_args(argv)

    if args.check:
        sys.exit(_cli_check())
    parser.print_help()


if __name__ == "__main__":
    main()
