from dataclasses import dataclass, field

from settlement.errors import ValidationError

CASH = "cash"
STABLE_YIELDS = "stable_yields"
DEFI_YIELD = "defi_yield"
TOKENIZED_GOLD = "tokenized_gold"
BLUECHIP_CRYPTO = "bluechip_crypto"

CATEGORIES = (CASH, STABLE_YIELDS, DEFI_YIELD, TOKENIZED_GOLD, BLUECHIP_CRYPTO)
CASH_SYMBOL = "USDC"

CHAIN_IDS = {
    "ethereum": 1,
    "base": 8453,
    "arbitrum": 42161,
    "optimism": 10,
    "polygon": 137,
    "bsc": 56,
    "avalanche": 43114,
}


@dataclass(frozen=True)
class Asset:
    symbol: str
    category: str | None
    decimals: int
    addresses: dict[str, str] = field(default_factory=dict)


ASSETS = {
    "USDC": Asset(
        "USDC",
        CASH,
        6,
        {
            "base": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
            "ethereum": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
        },
    ),
    "USDM": Asset(
        "USDM",
        STABLE_YIELDS,
        18,
        {
            "base": "0x59D9356E565Ab3A36dD77763Fc0d87fEaf85508C",
            "ethereum": "0x59D9356E565Ab3A36dD77763Fc0d87fEaf85508C",
        },
    ),
    "SDAI": Asset("SDAI", DEFI_YIELD, 18, {"ethereum": "0x83F20F44975D03b1b09e64809B757c47f942BEeA"}),
    "PAXG": Asset(
        "PAXG",
        TOKENIZED_GOLD,
        18,
        {
            "base": "0x6e53131F68a034873b6bFA15502aF094Ef0c5854",
            "ethereum": "0x45804880De22913dAFE09f4980848ECE6EcbAf78",
        },
    ),
    "WBTC": Asset("WBTC", BLUECHIP_CRYPTO, 8, {"ethereum": "0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599"}),
    "WETH": Asset(
        "WETH",
        BLUECHIP_CRYPTO,
        18,
        {
            "base": "0x4200000000000000000000000000000000000006",
            "ethereum": "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2",
        },
    ),
    # off-chain fiat, enters the system through payment deposits
    "KES": Asset("KES", None, 2),
}

PRIMARY_ASSETS = {
    CASH: "USDC",
    STABLE_YIELDS: "USDM",
    DEFI_YIELD: "SDAI",
    TOKENIZED_GOLD: "PAXG",
    BLUECHIP_CRYPTO: "WBTC",
}


class AssetCatalog:
    def __init__(self, assets: dict[str, Asset] | None = None) -> None:
        self.assets = assets if assets is not None else ASSETS

    def get(self, symbol: str) -> Asset:
        asset = self.assets.get(symbol.strip().upper())
        if asset is None:
            raise ValidationError(f"Unsupported asset: {symbol}")
        return asset

    def get_asset_category(self, symbol: str) -> str | None:
        return self.get(symbol).category

    def token_address(self, symbol: str, chain: str) -> str:
        asset = self.get(symbol)
        address = asset.addresses.get(chain.lower())
        if not address:
            raise ValidationError(f"{asset.symbol} is not available on {chain}")
        return address

    def decimals(self, symbol: str) -> int:
        return self.get(symbol).decimals

    def primary_asset(self, category: str) -> str:
        if category not in PRIMARY_ASSETS:
            raise ValidationError(f"Unknown asset category: {category}")
        return PRIMARY_ASSETS[category]
