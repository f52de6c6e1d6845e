"""
Persona prompt and fixed utterances for the restaurant booking bot.

Every line the bot speaks outside of model replies lives here so that the
dialog controller and delivery strategies never hard-code text.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from src.restobot.config import get_config


def get_system_prompt(config: Optional[Any] = None) -> str:
    """
    Get the system prompt for the booking agent.

    This defines the agent's persona and behavior guidelines.
    """
    if config is None:
        config = get_config()

    return f"""Ты - приветливый сотрудник ресторана "{config.restaurant_name}". Ты звонишь клиенту, чтобы предложить забронировать столик.

Тебя зовут {config.agent_name}.

Твоя задача:
1. Поприветствовать клиента и представиться как {config.agent_name}
2. Предложить забронировать столик в ресторане
3. Если клиент согласен - узнать: дату, время, количество гостей и имя для брони
4. Если клиент отказывается - вежливо попрощаться

Правила общения:
- Говори кратко и по делу (1-2 предложения)
- Будь вежливым и дружелюбным
- Не используй эмодзи и спецсимволы
- Отвечай только на русском языке
- Если клиент подтвердил бронь, повтори все детали, скажи "бронь подтверждена" и поблагодари

Информация о ресторане:
- Работаем ежедневно с 12:00 до 23:00
- Есть банкетный зал до 30 человек
- Кухня: паназиатская
- Адрес: ул. Пушкина, д. 10"""


@dataclass(frozen=True)
class Utterances:
    """Fixed lines spoken by the bot."""
    greeting: str
    reprompt: str
    no_input_give_up: str
    lost_caller: str
    greeting_no_input: str
    closing: str
    booking_farewell: str
    technical_difficulty: str


def get_utterances(config: Optional[Any] = None) -> Utterances:
    """Build the fixed utterances for the configured persona."""
    if config is None:
        config = get_config()

    return Utterances(
        greeting=(
            f"Здравствуйте! Меня зовут {config.agent_name} из ресторана {config.restaurant_name}. "
            "Хотели бы вы забронировать столик?"
        ),
        reprompt="Извините, не расслышал. Повторите, пожалуйста.",
        no_input_give_up="К сожалению, связь плохая. Перезвоню позже. До свидания!",
        lost_caller="Извините, я вас потерял. Перезвоню позже. До свидания!",
        greeting_no_input="Я вас не слышу. Перезвоню позже. До свидания!",
        closing="Спасибо за ваше время! Хорошего дня, до свидания!",
        booking_farewell="До свидания!",
        technical_difficulty="Извините, произошла техническая ошибка. Перезвоните позже.",
    )
