from __future__ import annotations

from dataclasses import dataclass

from aiogram import Bot

from pairbot.adapters.exchanges.binance import BinanceExchangeAdapter
from pairbot.adapters.llm import LLMProvider
from pairbot.core.cache import RedisCache
from pairbot.services.admission import AdmissionGate
from pairbot.services.analysis import AnalysisService
from pairbot.services.orchestrator import Orchestrator
from pairbot.services.registry import InstrumentRegistry
from pairbot.services.resolver import PairResolver


@dataclass
class ServiceHub:
    bot: Bot
    cache: RedisCache
    llm: LLMProvider
    exchange: BinanceExchangeAdapter
    registry: InstrumentRegistry
    resolver: PairResolver
    analysis_service: AnalysisService
    admission: AdmissionGate
    orchestrator: Orchestrator
