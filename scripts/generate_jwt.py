from __future__ import annotations

import argparse

from backend.app.auth import REPORTING_ROLES, issue_token


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Issue a bearer token for the funnel and delivery outcome endpoints."
    )
    parser.add_argument("--secret", required=True)
    parser.add_argument("--subject", required=True)
    parser.add_argument(
        "--roles",
        default=",".join(REPORTING_ROLES),
        help="Comma-separated roles (analyst, admin, service).",
    )
    parser.add_argument("--hours", type=int, default=12)
    parser.add_argument("--algorithm", default="HS256")
    args = parser.parse_args()

    roles = [item.strip() for item in args.roles.split(",") if item.strip()]
    print(
        issue_token(
            args.secret,
            args.subject,
            roles,
            hours=args.hours,
            algorithm=args.algorithm,
        )
    )


if __name__ == "__main__":
    main()
