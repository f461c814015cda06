"""Net worth package."""

from finsync.networth.calculator import (
    AccountBalance,
    NetWorthService,
    NetWorthSummary,
    account_balance,
    calculate_net_worth,
)

__all__ = [
    "AccountBalance",
    "NetWorthService",
    "NetWorthSummary",
    "account_balance",
    "calculate_net_worth",
]
