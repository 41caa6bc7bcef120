"""
OpenAI-backed chat provider.

Implements the streaming chat call used by conversation sessions and
the one-shot avatar generation call. Errors from the SDK propagate
unchanged; classification happens in the retrying executor.
"""

import logging
from typing import AsyncIterator, Dict, List, Optional
from urllib.parse import quote

from openai import AsyncOpenAI

from ..config.loader import ModelConfig
from ..storage.models import CharacterProfile, IntimacyLevel, Message, Role

logger = logging.getLogger(__name__)

FALLBACK_AVATAR_URL = "https://ui-avatars.com/api/?name={name}&background=random&size=512"


def single_attempt_client(client: Optional[AsyncOpenAI] = None) -> AsyncOpenAI:
    """Return a client whose transport never retries on its own.

    Retries are owned by RetryingRequestExecutor, so each executor
    attempt maps to exactly one HTTP request.
    """
    if client is None:
        return AsyncOpenAI(max_retries=0)
    return client.with_options(max_retries=0)


def build_system_prompt(profile: CharacterProfile) -> str:
    """Build the persona instruction for a character."""
    if profile.intimacy_level == IntimacyLevel.EXPLICIT:
        mode = "FLIRTY/BOLD/INTENSE"
    else:
        mode = "NORMAL/TEASING/FRIENDLY"

    return "\n".join([
        f"Role: {profile.name}, {profile.relationship}. {mode}.",
        f"Traits: {profile.traits}.",
        "Ref: If user uses Manglish/Malayalam, reply naturally in same mix.",
        "Rules:",
        "1. Mobile text style. Short. Casual. NO essays.",
        "2. Match user language (Manglish/Eng/Mal).",
        "3. Start msg with [MOOD: X]. X=Happy/Flirty/Sad/etc.",
        "4. Be human. Use 'U', 'Ur', lol, etc.",
    ])


def _to_openai_message(message: Message) -> Dict[str, str]:
    role = "assistant" if message.role == Role.MODEL else "user"
    return {"role": role, "content": message.content}


class OpenAIChatProvider:
    """Streaming chat session for one character.

    Keeps the conversation it has sent so far, seeded from stored
    history, the way a stateful provider chat would.
    """

    def __init__(
        self,
        profile: CharacterProfile,
        history: Optional[List[Message]] = None,
        model_config: Optional[ModelConfig] = None,
        client: Optional[AsyncOpenAI] = None
    ):
        """Initialize the provider.

        Args:
            profile: Character the conversation is held with
            history: Prior messages, oldest first
            model_config: Model name and temperature
            client: Preconfigured AsyncOpenAI client (created from the
                environment if omitted); its built-in retries are disabled
        """
        self.profile = profile
        self.model_config = model_config or ModelConfig()
        self.client = single_attempt_client(client)
        self.system_prompt = build_system_prompt(profile)
        self._history: List[Dict[str, str]] = [
            _to_openai_message(m) for m in (history or []) if m.content
        ]

    @property
    def history(self) -> List[Dict[str, str]]:
        return list(self._history)

    async def send_streaming_message(self, prompt: str) -> AsyncIterator[str]:
        """Start a streamed completion for ``prompt``.

        Returns once the provider accepted the request; the returned
        iterator yields text fragments as they arrive.
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")

        messages = [{"role": "system", "content": self.system_prompt}]
        messages.extend(self._history)
        messages.append({"role": "user", "content": prompt})

        response = await self.client.chat.completions.create(
            model=self.model_config.name,
            messages=messages,
            temperature=self.model_config.temperature,
            stream=True
        )
        return self._relay(prompt, response)

    async def _relay(self, prompt: str, response) -> AsyncIterator[str]:
        parts: List[str] = []
        async for chunk in response:
            if not chunk.choices:
                continue
            text = chunk.choices[0].delta.content
            if text:
                parts.append(text)
                yield text

        if parts:
            self._history.append({"role": "user", "content": prompt})
            self._history.append({"role": "assistant", "content": "".join(parts)})


def build_avatar_prompt(profile: CharacterProfile) -> str:
    return (
        f"Raw candid photo of {profile.name}, {profile.relationship}, {profile.traits}, "
        "highly detailed skin, 8k, f/1.8, photorealistic, cinematic lighting"
    )


async def generate_avatar(
    profile: CharacterProfile,
    client: Optional[AsyncOpenAI] = None,
    model_config: Optional[ModelConfig] = None
) -> str:
    """Generate a profile picture, falling back to a generated initials URL.

    Args:
        profile: Character to draw
        client: Preconfigured AsyncOpenAI client
        model_config: Supplies the image model name

    Returns:
        A ``data:`` URL with the image, or the fallback avatar URL when
        the image call fails or returns nothing
    """
    model_config = model_config or ModelConfig()
    fallback = FALLBACK_AVATAR_URL.format(name=quote(profile.name))
    try:
        client = single_attempt_client(client)
        result = await client.images.generate(
            model=model_config.image_model,
            prompt=build_avatar_prompt(profile),
            n=1,
            size="1024x1024",
            response_format="b64_json"
        )
    except Exception as e:
        logger.warning(f"Avatar generation failed for {profile.name}: {e}")
        return fallback

    data = result.data[0].b64_json if result.data else None
    if not data:
        logger.warning(f"Avatar generation returned no image for {profile.name}")
        return fallback
    return f"data:image/png;base64,{data}"
