from __future__ import annotations

def endpoints(testnet: bool) -> dict:
    """USDⓈ-M futures hosts. ``ws`` is the raw-stream base; the user data
    stream lives at ``<ws>/ws/<listenKey>``."""
    if testnet:
        return {
            "rest": "https://testnet.binancefuture.com",
            "ws": "wss://stream.binancefuture.com",
        }
    return {
        "rest": "https://fapi.binance.com",
        "ws": "wss://fstream.binance.com",
    }
