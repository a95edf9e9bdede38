"""
Redeem one Cashu token from the command line.

Run:
    pip install -e .
    python examples/redeem_token.py cashuB... you@getalby.com

With only a token, the token is decoded and its proofs are checked against
the mint, but nothing is spent.
"""

import asyncio
import json
import sys

from cashu_redeem import RedeemError, configure_logging, create_redeemer


async def main(token: str, address: str = None) -> int:
    redeemer = create_redeemer()
    try:
        try:
            print(json.dumps(redeemer.decode_token(token), indent=2))
            if address is None:
                print(json.dumps(await redeemer.check_spendable(token), indent=2))
                return 0
        except RedeemError as e:
            print(f"{e.kind.value}: {e.message}")
            return 1

        result = await redeemer.redeem(token, address)
        print(json.dumps(result.to_dict(), indent=2))
        return 0 if result.paid else 1
    finally:
        await redeemer.close()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(2)
    configure_logging("INFO")
    sys.exit(asyncio.run(main(*sys.argv[1:3])))
