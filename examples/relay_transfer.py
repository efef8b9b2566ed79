"""Gasless transfer example.

This example demonstrates:
- Signing a transfer intent with the sender's key
- Relaying it through the gasless contract with the relayer's key
- Checking the transaction status afterwards

The sender must have approved the relay contract for the token beforehand.
"""

import logging
import os
import time

from dotenv import load_dotenv
from eth_account import Account

from gasless_relay import GaslessRelayer, TransferIntent

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOGLEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


def example_relay_transfer():
    """Sign and relay a standard (pre-approved) transfer."""

    sender_key = os.getenv("SENDER_PRIVATE_KEY")
    recipient = os.getenv("RECIPIENT_ADDRESS")
    if not sender_key or not recipient:
        raise ValueError("SENDER_PRIVATE_KEY and RECIPIENT_ADDRESS must be set")

    chain = os.getenv("CHAIN", "kadena-testnet")
    token = os.getenv("TOKEN_SYMBOL", "TUSDC")
    amount = int(os.getenv("TRANSFER_AMOUNT", "1000000"))
    sender = Account.from_key(sender_key)

    relayer = GaslessRelayer.from_env()
    relayer.connect()

    nonce = relayer.get_user_nonce(chain, sender.address)
    fee = relayer.compute_fee(chain, token, amount).relayer_fee
    print(f"Sender {sender.address} nonce={nonce} fee={fee}")

    unsigned = TransferIntent(
        from_address=sender.address,
        to_address=recipient,
        token_symbol=token,
        amount=amount,
        nonce=nonce,
        deadline=int(time.time()) + 600,
        signature="",
        relayer_fee=fee,
    )
    digest = relayer.signing_digest(chain, unsigned, fee)
    signed = Account.unsafe_sign_hash(digest, private_key=sender_key)

    response = relayer.relay(
        {
            "chainId": chain,
            "request": {
                "fromAddress": unsigned.from_address,
                "toAddress": unsigned.to_address,
                "tokenSymbol": token,
                "transferAmount": str(amount),
                "relayerServiceFee": str(fee),
                "transactionNonce": str(nonce),
                "expirationDeadline": str(unsigned.deadline),
            },
            "signature": signed.signature.to_0x_hex(),
        }
    )

    if response.success:
        print("✅ Transfer relayed!")
        print(f"   Tx hash: {response.transaction_hash}")
        print(f"   Explorer: {response.explorer_url}")
        print(f"   Status: {relayer.transaction_status(chain, response.transaction_hash)}")
    else:
        print(f"❌ Relay failed ({response.status_code}): {response.message}")

    relayer.close()


def main():
    """Run the gasless transfer example."""

    print("=" * 50)
    print("Gasless Relay - Standard Transfer")
    print("=" * 50)

    example_relay_transfer()


if __name__ == "__main__":
    main()
