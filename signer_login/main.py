import argparse
import asyncio
import logging

from signer_login.ui.cli import SignerLoginCLI


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="signer-login", description="Sign in through a remote signer.")
    parser.add_argument("--relay", help="relay websocket URI, overrides the relays in the connection string")
    parser.add_argument("--mobile", action="store_true",
                        help="wait for an explicit 'open' before listening for the signer")
    parser.add_argument("--verbose", action="store_true", help="log protocol activity")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(message)s",
    )
    cli = SignerLoginCLI(relay_uri=args.relay, passive_scanning=not args.mobile)
    try:
        asyncio.run(cli.run())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logging.getLogger(__name__).exception("Fatal error")
        print(f"Fatal Error: {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
