# app/services/instructions.py
"""
Carrier-neutral call instructions and their TwiML rendering.

The call flow only ever returns these; turning them into markup is the
carrier adapter's job.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Sequence, Union

from twilio.twiml.voice_response import VoiceResponse

VOICE = "alice"
LANGUAGE = "en-US"


@dataclass(frozen=True)
class Speak:
    text: str


@dataclass(frozen=True)
class CollectDigits:
    count: int
    next_target: str
    timeout: int = 10
    prompt: Optional[str] = None
    finish_on_key: Optional[str] = None


@dataclass(frozen=True)
class Dial:
    number: str
    max_duration_seconds: int
    completion_target: str


@dataclass(frozen=True)
class Hangup:
    pass


@dataclass(frozen=True)
class Redirect:
    target: str


Instruction = Union[Speak, CollectDigits, Dial, Hangup, Redirect]


def render_twiml(instructions: Sequence[Instruction], *, base_url: str = "",
                 caller_id: Optional[str] = None) -> str:
    """Render instructions to a TwiML document."""
    response = VoiceResponse()

    def url(target: str) -> str:
        return f"{base_url.rstrip('/')}{target}" if base_url else target

    for ins in instructions:
        if isinstance(ins, Speak):
            response.say(ins.text, voice=VOICE, language=LANGUAGE)
        elif isinstance(ins, CollectDigits):
            gather = response.gather(
                input="dtmf",
                num_digits=ins.count,
                action=url(ins.next_target),
                method="POST",
                timeout=ins.timeout,
                finish_on_key=ins.finish_on_key,
            )
            if ins.prompt:
                gather.say(ins.prompt, voice=VOICE, language=LANGUAGE)
        elif isinstance(ins, Dial):
            dial = response.dial(
                action=url(ins.completion_target),
                method="POST",
                time_limit=ins.max_duration_seconds,
                caller_id=caller_id,
            )
            dial.number(ins.number)
        elif isinstance(ins, Hangup):
            response.hangup()
        elif isinstance(ins, Redirect):
            response.redirect(url(ins.target), method="POST")
        else:
            raise TypeError(f"Unknown instruction: {ins!r}")

    return str(response)
