"""
Real-Time Voice Booking Session

Event-driven pipeline from microphone to playback:

Architecture:
- Event Bus: Typed session events with async dispatch
- Audio Capture: Microphone frames plus an energy analyser
- STT Stream: Streaming transcription over a websocket
- TTS Stream: Cancellable synthesis and playback
- Turn Controller: End-of-turn detection and barge-in
- LLM Stream: Chat completions with tool calls
- Tool Orchestrator: Availability, booking and lookup tools
- Voice Session: Lifecycle, reconnects and conversation logging

Usage:
    from barber_voice.realtime import run_voice_agent

    await run_voice_agent()
"""

from .events import (
    Event,
    EventBus,
    EventPriority,
    VoiceEvent,
    TranscriptEvent,
    TranscriptionErrorEvent,
    ConnectionLostEvent,
    TurnEndEvent,
    BargeInEvent,
    TurnStateEvent,
    TTSStartedEvent,
    TTSEndedEvent,
    TTSErrorEvent,
    ToolCallEvent,
    SessionStateEvent,
    TurnState,
    TurnTrigger,
    SessionState,
)
from .audio_capture import AudioCapture, AudioCaptureConfig, FrequencyAnalyser, MicrophoneUnavailable
from .stt_stream import SonioxSTTStream, STTConfig, STTState, TranscriptionError
from .tts_stream import ElevenLabsTTSStream, PcmPlayer, SynthesisError, TTSConfig, TTSState
from .llm_stream import AsyncLLMStream, GenerationConfig, LLMError, LLMResponse, ToolCall
from .providers import VoiceProviders, build_providers
from .turn_controller import TurnController
from .tools import TOOL_DEFINITIONS, ToolOrchestrator
from .conversation_log import ConversationLogger
from .session import VoiceSession
from .voice_agent import BookingVoiceAgent, demo_backend, print_banner, run_voice_agent

__all__ = [
    # Events
    "Event",
    "EventBus",
    "EventPriority",
    "VoiceEvent",
    "TranscriptEvent",
    "TranscriptionErrorEvent",
    "ConnectionLostEvent",
    "TurnEndEvent",
    "BargeInEvent",
    "TurnStateEvent",
    "TTSStartedEvent",
    "TTSEndedEvent",
    "TTSErrorEvent",
    "ToolCallEvent",
    "SessionStateEvent",
    "TurnState",
    "TurnTrigger",
    "SessionState",
    # Audio
    "AudioCapture",
    "AudioCaptureConfig",
    "FrequencyAnalyser",
    "MicrophoneUnavailable",
    # STT
    "SonioxSTTStream",
    "STTConfig",
    "STTState",
    "TranscriptionError",
    # TTS
    "ElevenLabsTTSStream",
    "PcmPlayer",
    "SynthesisError",
    "TTSConfig",
    "TTSState",
    # LLM
    "AsyncLLMStream",
    "GenerationConfig",
    "LLMError",
    "LLMResponse",
    "ToolCall",
    # Providers
    "VoiceProviders",
    "build_providers",
    # Turns and tools
    "TurnController",
    "TOOL_DEFINITIONS",
    "ToolOrchestrator",
    # Session
    "ConversationLogger",
    "VoiceSession",
    # Voice Agent
    "BookingVoiceAgent",
    "demo_backend",
    "print_banner",
    "run_voice_agent",
]
