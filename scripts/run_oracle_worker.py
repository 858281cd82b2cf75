#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[oracle] binary={os.environ.get('ORACLE_BROWSER_BINARY', 'auto')} | "
    f"profile={os.environ.get('ORACLE_BROWSER_PROFILE', '~/.oracle/chrome')} | "
    f"port={os.environ.get('ORACLE_BROWSER_PORT', '9222')} | "
    f"base_url={os.environ.get('ORACLE_BASE_URL', 'https://chatgpt.com/')}",
    file=sys.stderr,
)

from chat_oracle.worker import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
