"""
System prompt and message building for the booking agent.

Every LLM turn carries the shop clock's "now", the current booking step,
the booking draft as JSON and the live catalog, followed by a bounded
window of recent history and the latest user utterance.
"""

from typing import Any, Dict, List, Optional, Sequence

from barber_voice.config import ShopConfig
from barber_voice.core.booking_state import BookingConversation
from barber_voice.core.clock import ShopClock
from barber_voice.core.models import Barber, ConversationTurn, Service


BOOKING_SYSTEM_PROMPT = """Ти си {assistant_name}, гласовият асистент на бръснарница "{shop_name}".

ЕЗИК: Говори само на български. Отговаряй кратко, с едно-две изречения, защото отговорите се четат на глас.
Цените са в евро (EUR).

Сега е {now}. Днешна дата: {today}.

ЦЕЛ: Помогни на клиента да запише, премести или откаже час.

ПРАВИЛА ЗА РЕЗЕРВАЦИЯ:
1. Първо разбери услугата.
2. После попитай за дата и час. Провери свободните часове с инструмент, не ги измисляй.
3. Накрая поискай име и телефон.
4. Преди да запишеш, повтори телефона цифра по цифра и поискай потвърждение.
5. Записвай само с book_appointment. Телефонът се записва във формат 359...
6. Ако няма услуги или фризьори, кажи го ясно, вместо да измисляш.

ТЕКУЩА СТЪПКА: {step}
ЧЕРНОВА НА РЕЗЕРВАЦИЯТА: {draft}

УСЛУГИ:
{services}

ФРИЗЬОРИ:
{barbers}
"""


def format_services(services: Sequence[Service], lang: str = "bg") -> str:
    if not services:
        return "- (няма добавени услуги)"
    return "\n".join(
        f"- {s.display_name(lang)} (код: {s.id}) - {s.price:g} EUR, {s.duration} мин."
        for s in services
    )


def format_barbers(barbers: Sequence[Barber], lang: str = "bg") -> str:
    if not barbers:
        return "- (няма добавени фризьори)"
    return "\n".join(f"- {b.display_name(lang)} (код: {b.id})" for b in barbers)


def build_system_prompt(
    shop: ShopConfig,
    clock: ShopClock,
    conversation: BookingConversation,
    services: Sequence[Service],
    barbers: Sequence[Barber],
) -> str:
    return BOOKING_SYSTEM_PROMPT.format(
        assistant_name=shop.assistant_name,
        shop_name=shop.name,
        now=clock.describe_now(),
        today=clock.today_str(),
        step=conversation.current_step.value,
        draft=conversation.draft_json(),
        services=format_services(services, shop.language),
        barbers=format_barbers(barbers, shop.language),
    )


def build_messages(
    system_prompt: str,
    history: Sequence[ConversationTurn],
    user_text: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """System prompt, then history, then the latest utterance."""
    messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    messages.extend(turn.to_message() for turn in history)
    if user_text:
        messages.append({"role": "user", "content": user_text})
    return messages
