"""Relayer fee estimation example for the gasless relay.

This example demonstrates:
- Loading the relayer from environment variables
- Quoting the relayer fee for a transfer amount
- Reading live gas prices and the relayer's native balance
"""

import logging
import os

from dotenv import load_dotenv

from gasless_relay import GaslessRelayer

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOGLEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


def example_estimate_fee():
    """Quote the fee for a 10 token transfer on the configured chain."""

    chain = os.getenv("CHAIN", "kadena-testnet")
    token = os.getenv("TOKEN_SYMBOL", "TUSDC")
    amount = int(os.getenv("TRANSFER_AMOUNT", "10000000"))

    relayer = GaslessRelayer.from_env()
    relayer.connect()

    estimate = relayer.estimate_fee({"chainId": chain, "tokenSymbol": token, "amount": amount})
    if estimate.success:
        print("✅ Fee estimate")
        print(f"   Fee (base units): {estimate.fee}")
        print(f"   Fee (USD): {estimate.fee_usd}")
    else:
        print(f"❌ Fee estimate failed: {estimate.message} ({estimate.error_kind})")

    breakdown = relayer.compute_fee(chain, token, amount)
    print(f"   Percentage fee: {breakdown.percentage_fee}")
    print(f"   Minimum fee: {breakdown.min_fee_tokens}")
    print(f"   Maximum fee: {breakdown.max_fee_allowed}")
    if breakdown.degraded:
        print("   ⚠️ Price unavailable, percentage fee only")

    profile = relayer.registry.resolve(chain)
    price = relayer.gas.gas_price(profile)
    print(f"   Max fee per gas: {price.max_fee_per_gas} wei ({price.source})")

    balance = relayer.relayer_balance(chain)
    print(f"   Relayer {balance['address']} holds {balance['balance']} native")

    relayer.close()


def main():
    """Run the fee estimation example."""

    print("=" * 50)
    print("Gasless Relay - Fee Estimation")
    print("=" * 50)

    example_estimate_fee()


if __name__ == "__main__":
    main()
