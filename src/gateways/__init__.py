"""External gateways - yield oracle and swap quotes.

Components:
- YieldOracle: annualized yield per vault (HTTP or static)
- SwapGateway: executable swap instructions (HTTP or local router)
"""

from src.gateways.http_client import JsonHttpClient
from src.gateways.swap_gateway import HttpSwapGateway, LocalSwapGateway, SwapGateway, SwapQuote
from src.gateways.yield_oracle import (
    HttpYieldOracle,
    StaticYieldOracle,
    YieldOpportunity,
    YieldOracle,
)

__all__ = [
    "JsonHttpClient",
    # Yield
    "YieldOracle",
    "HttpYieldOracle",
    "StaticYieldOracle",
    "YieldOpportunity",
    # Swaps
    "SwapGateway",
    "HttpSwapGateway",
    "LocalSwapGateway",
    "SwapQuote",
]
