from dotenv import load_dotenv

load_dotenv()

import os

from algotrader.exchange.bybit.client import BybitClient
from algotrader.core.config import BYBIT_MAINNET_URL, BYBIT_TESTNET_URL

key = os.getenv("BYBIT_API_KEY", "").strip()
secret = os.getenv("BYBIT_API_SECRET", "").strip()
env = os.getenv("BYBIT_ENV", "testnet").strip().lower()
base = os.getenv("BYBIT_BASE_URL", "").strip() or (
    BYBIT_MAINNET_URL if env == "mainnet" else BYBIT_TESTNET_URL
)

if not key or not secret:
    raise SystemExit("Missing BYBIT_API_KEY or BYBIT_API_SECRET")

client = BybitClient(key, secret, base, recv_window=int(os.getenv("BYBIT_RECV_WINDOW", "5000")))
print("clock offset ms:", client.sync_time())

wallet = client.wallet_balance()
for account in wallet.get("list", []):
    for coin in account.get("coin", []):
        if coin.get("coin") == "USDT":
            print("USDT equity:", coin.get("equity"), "available:", coin.get("availableToWithdraw"))
