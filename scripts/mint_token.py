# scripts/mint_token.py
import os  # read environment variables
import sys  # exit with a message
import argparse  # parse CLI args

from eventgate.auth import OPERATOR_ROLES, mint_operator_token  # operator JWT helper


def main() -> None:  # main entrypoint
    parser = argparse.ArgumentParser(description="Mint an operator bearer token for the scan API")  # CLI parser
    parser.add_argument("--user-id", required=True)  # operator user id (sub claim)
    parser.add_argument("--role", choices=OPERATOR_ROLES, default="EVENT_ORGANIZER")  # operator role claim
    parser.add_argument("--ttl-minutes", type=int, default=60)  # token lifetime
    args = parser.parse_args()  # parse args

    secret = os.environ.get("TICKET_SIGNING_SECRET")  # signing secret, no default
    if not secret:  # fail closed like the service does
        sys.exit("TICKET_SIGNING_SECRET is not set")

    token = mint_operator_token(args.user_id, args.role, secret, ttl_minutes=args.ttl_minutes)  # sign token
    print(token)  # output token to stdout


if __name__ == "__main__":  # run as script
    main()  # call main
