from __future__ import annotations

import argparse
from datetime import timedelta

from cvflow.core.security import create_access_token


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Issue an access token for the flows API")
    p.add_argument("--email", required=True)
    p.add_argument("--minutes", type=int, default=60)
    return p.parse_args()


def main() -> None:
    args = _parse_args()
    token = create_access_token(args.email.strip(), timedelta(minutes=args.minutes))
    print(f"access_token={token}")


if __name__ == "__main__":
    main()
