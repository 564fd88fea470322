"""Outreach content generation.

The batch processor treats generation as a black box: a ``Generator`` takes a
claimed contact and returns three message variants plus a tone label, or
raises. ``GenerationService`` wraps any generator with a per-call timeout and
folds every failure into one of two classes:

- ``RetryableGenerationError``: timeouts, transport trouble, anything
  unexpected. The record goes back to pending while attempts remain.
- ``InputRejectedError``: the contact itself cannot be processed (for
  example a malformed profile link). The record fails immediately.
"""
import logging
import re
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Protocol
from urllib.parse import urlparse

import openai
from openai import OpenAI

from .schemas import GeneratedContent
from .store import ClaimedRecord

log = logging.getLogger("generator")

class GenerationError(Exception):
    retryable = True

class RetryableGenerationError(GenerationError):
    retryable = True

class InputRejectedError(GenerationError):
    retryable = False

class Generator(Protocol):
    def generate(self, record: ClaimedRecord) -> GeneratedContent: ...

SENIOR_TITLE_WORDS = {
    "chief", "ceo", "cto", "cfo", "coo", "founder", "cofounder",
    "president", "vp", "svp", "evp", "director", "head", "owner", "partner",
}

def derive_tone(title: str | None) -> str:
    words = set(re.findall(r"[a-z]+", (title or "").lower()))
    if words & SENIOR_TITLE_WORDS:
        return "executive"
    return "conversational"

def check_profile_url(url: str | None) -> None:
    if not url:
        return
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc or "." not in parsed.netloc:
        raise InputRejectedError(f"malformed profile link: {url!r}")

class TemplateGenerator:
    """Offline generator used when no model is configured."""

    def generate(self, record: ClaimedRecord) -> GeneratedContent:
        check_profile_url(record.profile_url)
        first, company = record.first_name, record.company_name
        return GeneratedContent(
            message1=(
                f"Hi {first},\n\nI'm reaching out to explore how we could work with {company}. "
                "Our team builds software that drives measurable business results.\n\n"
                "Would love to connect."
            ),
            message2=(
                f"Hi {first},\n\nWe've helped companies similar to {company} reach their "
                "technology goals faster. Happy to share how.\n\nLooking forward to connecting!"
            ),
            message3=(
                f"Hi {first},\n\nI have a case study that maps closely to what {company} is doing. "
                "Would it be useful to walk through it?"
            ),
            tone=derive_tone(record.title),
        )

SYSTEM_PROMPT = """You write short, personalized LinkedIn outreach messages.
Given one contact, write three distinct message variants (opening note,
follow-up, case-study angle) of at most 600 characters each, and a one-word
tone label describing the register you used (for example "executive",
"conversational", "technical")."""

def build_contact_context(record: ClaimedRecord) -> str:
    lines = [
        f"Company: {record.company_name}",
        f"Name: {record.first_name} {record.last_name}",
    ]
    if record.title:
        lines.append(f"Title: {record.title}")
    if record.profile_url:
        lines.append(f"Profile: {record.profile_url}")
    return "\n".join(lines)

class OpenAIGenerator:
    def __init__(self, client: OpenAI, model: str):
        self.client = client
        self.model = model

    @classmethod
    def from_settings(cls, api_key: str, model: str, timeout_seconds: float) -> "OpenAIGenerator":
        # retries are owned by the cycle/attempt budget, not the SDK
        return cls(OpenAI(api_key=api_key, timeout=timeout_seconds, max_retries=0), model)

    def generate(self, record: ClaimedRecord) -> GeneratedContent:
        check_profile_url(record.profile_url)
        try:
            resp = self.client.responses.parse(
                model=self.model,
                instructions=SYSTEM_PROMPT,
                input=build_contact_context(record),
                text_format=GeneratedContent,
            )
        except openai.LengthFinishReasonError as e:
            raise InputRejectedError(f"message generation exceeded token limit for {record.company_name}") from e
        except openai.BadRequestError as e:
            raise InputRejectedError(f"model rejected input: {e}") from e
        except openai.APIError as e:
            raise RetryableGenerationError(f"model call failed: {e}") from e

        if resp.output_parsed is None:
            raise RetryableGenerationError("model returned no parsed output")
        return resp.output_parsed

class GenerationService:
    """Runs a generator with a per-call timeout and classifies its failures.

    Every call gets its own daemon thread, so the timeout measures only the
    generator itself. A call that overruns is abandoned, not interrupted; it
    cannot hold back the calls that come after it.
    """

    def __init__(self, generator: Generator, timeout_seconds: float):
        self.generator = generator
        self.timeout_seconds = timeout_seconds

    def _start(self, record: ClaimedRecord) -> Future:
        future: Future = Future()

        def run():
            future.set_running_or_notify_cancel()
            try:
                future.set_result(self.generator.generate(record))
            except Exception as e:
                future.set_exception(e)

        threading.Thread(target=run, name=f"generate-{record.id[:8]}", daemon=True).start()
        return future

    def generate(self, record: ClaimedRecord) -> GeneratedContent:
        future = self._start(record)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FuturesTimeout as e:
            log.warning(
                "generator call abandoned after timeout",
                extra={"record_id": record.id, "job_id": record.job_id, "event": "generate_timeout"},
            )
            raise RetryableGenerationError(f"generation timed out after {self.timeout_seconds}s") from e
        except GenerationError:
            raise
        except Exception as e:
            log.warning(
                "unclassified generator error treated as retryable",
                extra={"record_id": record.id, "job_id": record.job_id, "event": "generate_unclassified"},
                exc_info=True,
            )
            raise RetryableGenerationError(f"{type(e).__name__}: {e}") from e

def build_generator(api_key: str | None, model: str, timeout_seconds: float) -> Generator:
    if api_key:
        return OpenAIGenerator.from_settings(api_key, model, timeout_seconds)
    log.info("no model key configured, using template generator", extra={"event": "generator_template"})
    return TemplateGenerator()
