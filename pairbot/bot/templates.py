from __future__ import annotations

import html
import random

from pairbot.adapters.symbols import split_pair
from pairbot.core.models import AnalysisOutcome

# Markdown, appended to the final analysis segment
DISCLAIMER = (
    "\n\n━━━━━━━━━━━━━━━━━━━━━━━━━\n"
    "⚠️ *Disclaimer*: the analysis above is for reference only and is not financial advice. "
    "Trading carries risk; decide carefully."
)
DISCLAIMER_HINTS = ("disclaimer", "not financial advice", "for reference only")

NOT_ANALYSIS_REPLIES = [
    "💡 I analyse crypto pairs. Send a request that names a coin, for example:\n\n"
    "• <code>analyse BTC/USDT</code>\n"
    "• <code>how is ETHUSDT trending?</code>\n"
    "• <code>check the indicators on SOL</code>",
    "💡 Give me a coin to look at. Try <code>BTC outlook</code>, <code>ETH perp levels</code> or "
    "<code>wyckoff read on SOL</code>.",
]


def welcome_text(name: str | None = None) -> str:
    greeting = f"👋 Hi <b>{html.escape(name)}</b>!" if name else "🤖 <b>Welcome to the crypto pair analysis bot!</b>"
    lines = [
        greeting,
        "",
        "I analyse any Binance trading pair, spot or perpetual futures.",
        "",
        "📝 <b>Examples</b>",
        "• <code>analyse BTC/USDT</code>",
        "• <code>how is ETHUSDT trending right now?</code>",
        "• <code>show me the indicators for SOL perp</code>",
        "",
        "⚡ <b>What happens</b>",
        "• I work out which pair you mean",
        "• fetch live candles from 15m up to monthly",
        "• stream a technical analysis back section by section",
        "",
        "💡 Every Binance pair is supported. Ask away!",
    ]
    return "\n".join(lines)


def help_text() -> str:
    return welcome_text()


def not_analysis_text() -> str:
    return random.choice(NOT_ANALYSIS_REPLIES)


def not_found_text() -> str:
    return "❓ I couldn't find that trading pair. Name the coin explicitly, e.g. <code>analyse BTC/USDT</code>."


def busy_text() -> str:
    return "⏳ Too many analyses are running right now. Please try again in a moment."


FAILED_BY_CODE = {
    "INVALID_SYMBOL": "❌ That trading pair symbol is not valid. Please check the spelling.",
    "RATE_LIMIT": "⏰ Requests are too frequent right now. Please wait a moment and try again.",
    "BINANCE_API_ERROR": "❌ Could not fetch market data. Please try again later.",
    "EMPTY_KLINE_DATA": "❌ No usable market data is available for that pair right now.",
}


def failed_text(error_code: str | None = None) -> str:
    return FAILED_BY_CODE.get(error_code or "", "❌ Something went wrong while preparing the analysis. Please try again later.")


def truncated_text() -> str:
    return "⚠️ The analysis was interrupted before it finished. The sections above are all I could deliver."


OUTCOME_TEXT = {
    AnalysisOutcome.NOT_ANALYSIS: not_analysis_text,
    AnalysisOutcome.NOT_FOUND: not_found_text,
    AnalysisOutcome.BUSY: busy_text,
    AnalysisOutcome.FAILED: failed_text,
    AnalysisOutcome.TRUNCATED: truncated_text,
}


def outcome_text(outcome: AnalysisOutcome, error_code: str | None = None) -> str | None:
    if outcome is AnalysisOutcome.FAILED:
        return failed_text(error_code)
    render = OUTCOME_TEXT.get(outcome)
    return render() if render else None


def fetching_text(symbol: str) -> str:
    return f"📊 Fetching market data for <b>{split_pair(symbol).display}</b>..."


def analysing_text(symbol: str) -> str:
    return (
        f"🤖 Analysing <b>{split_pair(symbol).display}</b>, please wait...\n\n"
        "<i>Sections will arrive as soon as they are ready</i> ⏳"
    )


def with_disclaimer(content: str) -> str:
    low = content.lower()
    if any(hint in low for hint in DISCLAIMER_HINTS):
        return content
    return content + DISCLAIMER


def status_text(snapshot: dict) -> str:
    active = snapshot.get("active_conversations") or []
    return "\n".join(
        [
            "<b>Analysis status</b>",
            "",
            f"running:  {snapshot.get('global_count', 0)} / {snapshot.get('max_concurrent', 0)}",
            f"active chats:  {len(active)}",
        ]
    )
