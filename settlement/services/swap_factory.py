import logging

from settlement.config import Settings
from settlement.services.classic_provider import ClassicSwapProvider
from settlement.services.fusion_provider import FusionProvider
from settlement.services.swap_provider import SwapProvider
from settlement.services.zerox_provider import ZeroExGaslessProvider

logger = logging.getLogger(__name__)


def create_swap_provider(settings: Settings) -> SwapProvider:
    choice = settings.swap_provider
    if choice == "fusion" and settings.swap_network != "ethereum":
        logger.warning("Fusion is only wired for ethereum; using 0x on %s", settings.swap_network)
        choice = "zerox"

    if choice == "fusion":
        provider: SwapProvider = FusionProvider(
            settings.oneinch_api_key,
            settings.swap_wallet_private_key,
            network=settings.swap_network,
            api_base=settings.oneinch_api_base,
            timeout_sec=settings.http_timeout_sec,
        )
    elif choice == "classic":
        provider = ClassicSwapProvider(
            settings.oneinch_api_key,
            settings.swap_wallet_private_key,
            settings.node_url,
            network=settings.swap_network,
            api_base=settings.oneinch_api_base,
            timeout_sec=settings.http_timeout_sec,
        )
    else:
        provider = ZeroExGaslessProvider(
            settings.zerox_api_key,
            settings.swap_wallet_private_key,
            network=settings.swap_network,
            api_base=settings.zerox_api_base,
            timeout_sec=settings.http_timeout_sec,
        )
    if not provider.is_configured():
        logger.warning("Swap provider %s is not fully configured; swaps will fail", provider.get_provider_name())
    logger.info("Swap provider: %s on %s", provider.get_provider_name(), settings.swap_network)
    return provider
