"""Print a fresh credential-vault master secret and seed backend/.env with it.

Usage:
    python generate_keys.py            # writes .env from .env.template if .env is missing
    python generate_keys.py --print    # only print the key
"""

import sys
from pathlib import Path

from adsync.security import CredentialVault

BACKEND_DIR = Path(__file__).resolve().parent
TEMPLATE_PATH = BACKEND_DIR / ".env.template"
ENV_PATH = BACKEND_DIR / ".env"


def render_env(template: str, encryption_key: str) -> str:
    """Fill the ENCRYPTION_KEY= line of the template, keep everything else."""
    lines = []
    for line in template.splitlines():
        if line.startswith("ENCRYPTION_KEY="):
            lines.append(f"ENCRYPTION_KEY={encryption_key}")
        else:
            lines.append(line)
    return "\n".join(lines) + "\n"


def main(argv) -> int:
    encryption_key = CredentialVault.generate_key()
    print(f"Generated ENCRYPTION_KEY: {encryption_key}")

    if "--print" in argv:
        return 0
    if ENV_PATH.exists():
        # Rotating the master secret makes every stored token undecryptable
        print(f"{ENV_PATH} already exists, not overwriting it.")
        return 1
    if not TEMPLATE_PATH.exists():
        print(f"Error: {TEMPLATE_PATH} not found. Please ensure it exists.")
        return 1

    ENV_PATH.write_text(render_env(TEMPLATE_PATH.read_text(), encryption_key))
    print(f"Successfully wrote to {ENV_PATH}")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
