"""
Example: Credit System Usage

This example logs in with an email and password, reads the balance,
spends credits and lists recent transactions.
"""

import asyncio
import logging

from credit_system_sdk import (
    CreditSystem,
    CreditSystemConfiguration,
    CreditSystemEvent,
    InsufficientCreditsError,
)


async def main():
    """Main async example."""

    logging.basicConfig(level=logging.INFO)

    config = CreditSystemConfiguration(
        api_url="https://YOUR_CREDITS_HOST",
        auth_mode="standalone",
        on_token_expired=lambda: print("Session expired, please log in again"),
    )

    async with CreditSystem(config) as credits:
        credits.on(CreditSystemEvent.BALANCE_CHANGED, lambda balance: print(f"Balance: {balance}"))
        credits.on(CreditSystemEvent.ERROR, lambda error: print(f"Error: {error.message}"))

        await credits.initialize()

        # Example 1: Log in
        user = await credits.login("YOUR_EMAIL", "YOUR_PASSWORD")
        print(f"Logged in as {user.email}")

        # Example 2: Balance (served from cache for 30 seconds)
        balance = await credits.get_balance()
        print(f"Current balance: {balance.balance}")

        # Example 3: Spend credits
        try:
            transaction = await credits.spend(10, "Report export", metadata={"report_id": 123})
            print(f"Spent {transaction.amount} credits (transaction {transaction.id})")
        except InsufficientCreditsError as e:
            print(f"Not enough credits: {e.available} available")

        # Example 4: Recent history
        history = await credits.get_transaction_history({"limit": 5})
        for tx in history:
            print(f"  {tx.created_at} {tx.type:>7} {tx.amount}")

        credits.logout()


if __name__ == "__main__":
    asyncio.run(main())
