"""Encrypt a merchant gateway secret, or generate a new encryption key."""

import argparse
import getpass
import json

from paylink.common.crypto import encrypt_secret, generate_key


def main() -> None:
    parser = argparse.ArgumentParser(description="AES-256-GCM helper for stored gateway secrets.")
    parser.add_argument("--generate-key", action="store_true", help="print a new MERCHANT_SECRET_ENCRYPTION_KEY")
    parser.add_argument("--key", help="base64 key (defaults to MERCHANT_SECRET_ENCRYPTION_KEY)")
    args = parser.parse_args()

    if args.generate_key:
        print(generate_key())
        return

    secret = getpass.getpass("Gateway secret: ")
    print(json.dumps(encrypt_secret(secret, key=args.key), indent=2))


if __name__ == "__main__":
    main()
