"""
Barber Voice - Voice Booking Core

Real-time voice conversation layer for a barbershop booking system.

This package provides:
- Microphone capture with an energy analyser for barge-in
- Streaming speech-to-text and cancellable text-to-speech
- Turn detection from transcript activity and silence
- A booking state machine with Bulgarian field extraction
- LLM tool calling against the shop's booking backend
- Session lifecycle with bounded reconnects and conversation logging
"""

__version__ = "1.0.0"

from barber_voice.config import settings

__all__ = ["settings", "__version__"]
