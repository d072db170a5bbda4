import logging
import os
from typing import Optional

from openai import OpenAI, OpenAIError
from langfuse import Langfuse

from counsel.errors import ModelCallFailed

log = logging.getLogger(__name__)


# ============================================================
# Environment
# ============================================================
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
CHAT_MODEL = os.getenv("CHAT_MODEL", "gpt-4o-mini")
CHAT_TIMEOUT = float(os.getenv("CHAT_TIMEOUT", "60"))

LANGFUSE_PUBLIC_KEY = os.getenv("LANGFUSE_PUBLIC_KEY")
LANGFUSE_SECRET_KEY = os.getenv("LANGFUSE_SECRET_KEY")
LANGFUSE_HOST = os.getenv("LANGFUSE_HOST", "http://langfuse:3000")


SYSTEM_PROMPT = """
You are KFM Counsel, a Christian AI marriage counselor who guides users toward
self-discovery and understanding through thoughtful questions, rather than
providing ready-made answers.

1. Deep empathy first: always begin by validating the user's feelings.
2. Keep it concise: two or three short paragraphs unless the user asks for more.
   Give biblically grounded insight, then one reflective question, then a simple
   check-in such as "Does this resonate with you?".
3. When you cite a Bible verse you MUST wrap the reference in double square
   brackets, like [[Ephesians 4:32]] or [[Proverbs 3:5-6]].
4. Use "Jesus Christ", "Jesus" or "Christ" where it grounds the counsel in faith.
5. Safety first: if the user mentions violence, fear for their life, threats,
   self-harm, suicide or abuse, stop counseling and recommend emergency services.
6. Keep everything PG-13. Discussions of intimacy stay non-graphic and focus on
   communication, consent, respect and biblical values.
7. Where appropriate, recommend resources from www.kfpark.com.
8. If the user chooses to pray, write a first-person prayer they can read aloud
   as their own, weaving in what they shared and scripture in [[Reference]] form.

Do not use bold, headers or bullet points. Write in natural, flowing paragraphs.
""".strip()


def build_langfuse() -> Optional[Langfuse]:
    if not (LANGFUSE_PUBLIC_KEY and LANGFUSE_SECRET_KEY):
        return None
    return Langfuse(
        public_key=LANGFUSE_PUBLIC_KEY,
        secret_key=LANGFUSE_SECRET_KEY,
        host=LANGFUSE_HOST,
    )


class OpenAIChatModel:
    """
    The language-model collaborator: one prompt in, one reply out.
    """

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        model: str = CHAT_MODEL,
        system_prompt: str = SYSTEM_PROMPT,
        langfuse: Optional[Langfuse] = None,
    ):
        self._client = client
        self.model = model
        self.system_prompt = system_prompt
        self.langfuse = langfuse

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            try:
                self._client = OpenAI(api_key=OPENAI_API_KEY, timeout=CHAT_TIMEOUT)
            except OpenAIError as e:
                raise ModelCallFailed("OpenAI client is not configured") from e
        return self._client

    def send(
        self,
        text: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> str:
        trace = generation = None
        if self.langfuse:
            trace = self.langfuse.trace(
                name="counsel_turn",
                user_id=user_id,
                session_id=session_id,
            )
            generation = trace.generation(
                name="counsel_reply",
                model=self.model,
                input=text,
            )

        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self.system_prompt},
                    {"role": "user", "content": text},
                ],
            )
        except OpenAIError as e:
            if generation:
                generation.end(level="ERROR", status_message=str(e))
            raise ModelCallFailed(str(e)) from e

        answer = resp.choices[0].message.content if resp.choices else None
        if not answer or not answer.strip():
            if generation:
                generation.end(level="ERROR", status_message="empty response")
            raise ModelCallFailed("Model returned an empty response")

        if generation:
            generation.end(output=answer)
        if trace:
            trace.update(output=answer)

        return answer
