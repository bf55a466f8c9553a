"""Localized phrase lookup for everything the agent says or reports.

Bulgarian is the shop language; English is kept for the phrases an
operator is likely to see in logs and tests.
"""

from __future__ import annotations

from typing import Any

DEFAULT_LANGUAGE = "bg"

_MESSAGES: dict[str, dict[str, str]] = {
    "bg": {
        "question.service": "Каква услуга желаете? Предлагаме подстригване, бръснене, оформяне на брада или комбо.",
        "question.datetime": "За кой ден и час желаете да запишете?",
        "question.name": "На какво име да направя резервацията?",
        "question.phone": "Какъв е вашият телефонен номер?",
        "question.confirmation": "Потвърждавате ли резервацията?",
        "question.complete": "Резервацията е готова. Благодаря ви и до скоро!",
        "booking.summary": "Услуга: {service}, дата и час: {date_time}, име: {name}, телефон: {phone}.",
        "tool.slow_connection": "Връзката е бавна. Моля опитайте пак.",
        "tool.slot_taken": "Часът вече е зает. Моля изберете друг.",
        "tool.unknown": "Непознат инструмент: {name}",
        "tool.missing_args": "Липсват задължителни данни: {fields}",
        "tool.invalid_args": "Невалидни данни за {name}.",
        "tool.barber_not_found": "Фризьорът не е намерен.",
        "tool.service_not_found": "Услугата не е намерена.",
        "tool.appointment_not_found": "Записът не е намерен.",
        "tool.no_barbers": "В момента няма налични фризьори.",
        "tool.no_services": "В момента няма налични услуги.",
        "tool.no_slots": "Няма свободни часове за {date}.",
        "tool.no_earliest": "Няма свободни часове в следващите {days} дни.",
        "tool.earliest": "Най-ранният свободен час е на {date} в {time} при {barber}.",
        "tool.booked": "Готово! Записах ви за {service} при {barber} на {date} в {time}. Потвърждавам телефон: {phone}.",
        "tool.duplicate": "Часът вече е записан. Потвърждавам телефон: {phone}.",
        "tool.no_appointments": "Не намерих записи за {term}.",
        "tool.rescheduled": "Часът е преместен за {date} в {time}.",
        "tool.cancelled": "Часът е отменен.",
        "tool.backend_error": "Възникна грешка при достъпа до графика. Моля опитайте пак.",
        "session.connection_unstable": "Връзката е нестабилна. Моля, опитайте отново по-късно.",
        "session.please_repeat": "Извинете, не ви разбрах. Може ли да повторите?",
        "session.microphone_unavailable": "Няма достъп до микрофона.",
        "log.interrupted_marker": " [прекъснат]",
    },
    "en": {
        "question.service": "Which service would you like? We offer a haircut, a shave, beard trim or the combo.",
        "question.datetime": "Which day and time would you like?",
        "question.name": "What name should I put the booking under?",
        "question.phone": "What is your phone number?",
        "question.confirmation": "Shall I confirm the booking?",
        "question.complete": "Your booking is done. Thank you and see you soon!",
        "booking.summary": "Service: {service}, date and time: {date_time}, name: {name}, phone: {phone}.",
        "tool.slow_connection": "The connection is slow. Please try again.",
        "tool.slot_taken": "That slot is already taken. Please choose another one.",
        "tool.unknown": "Unknown tool: {name}",
        "tool.missing_args": "Missing required data: {fields}",
        "tool.invalid_args": "Invalid data for {name}.",
        "tool.barber_not_found": "Barber not found.",
        "tool.service_not_found": "Service not found.",
        "tool.appointment_not_found": "Appointment not found.",
        "tool.no_barbers": "There are no barbers available right now.",
        "tool.no_services": "There are no services available right now.",
        "tool.booked": "Done! You are booked for {service} with {barber} on {date} at {time}. Confirming phone: {phone}.",
        "tool.duplicate": "That booking is already made. Confirming phone: {phone}.",
        "session.connection_unstable": "The connection is unstable. Please try again later.",
        "session.please_repeat": "Sorry, I didn't catch that. Could you repeat?",
        "session.microphone_unavailable": "The microphone is not available.",
    },
}


def msg(key: str, lang: str = DEFAULT_LANGUAGE, **params: Any) -> str:
    """Return a localized message by key, or the key itself if not found.

    Missing translations fall back to Bulgarian. ``params`` are substituted
    with ``str.format``.
    """
    table = _MESSAGES.get(lang, {})
    template = table.get(key) or _MESSAGES[DEFAULT_LANGUAGE].get(key, key)
    return template.format(**params) if params else template
