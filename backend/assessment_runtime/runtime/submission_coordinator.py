from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Callable, Optional, Protocol, Union

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from assessment_runtime.models.submission_record import SubmissionRecord
from assessment_runtime.runtime.contracts import FinalizeResult, SessionVerdict, SubmissionPayload


logger = logging.getLogger(__name__)


class SubmissionRejected(Exception):
    """The grading collaborator refused the record (e.g. duplicate session)."""


class SubmissionSink(Protocol):
    async def deliver(self, payload: SubmissionPayload) -> None: ...


class DatabaseSubmissionSink:
    """Writes the SubmissionRecord row; the unique session_id constraint rejects duplicates."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def _write(self, payload: SubmissionPayload) -> None:
        db = self.session_factory()
        try:
            db.add(
                SubmissionRecord(
                    session_id=payload.session_id,
                    user_id=payload.user_id,
                    passed=bool(payload.passed),
                    duration_seconds=int(payload.duration_seconds),
                    language=str(payload.language or "unknown"),
                )
            )
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise SubmissionRejected("submission already recorded for this session") from e
        finally:
            db.close()

    async def deliver(self, payload: SubmissionPayload) -> None:
        await asyncio.to_thread(self._write, payload)


class HttpSubmissionSink:
    """POSTs the record to an external grading service."""

    def __init__(self, url: str, *, timeout_sec: float = 15.0, transport: httpx.AsyncBaseTransport | None = None):
        self.url = url
        self.timeout_sec = float(timeout_sec)
        self._transport = transport

    async def deliver(self, payload: SubmissionPayload) -> None:
        async with httpx.AsyncClient(timeout=self.timeout_sec, transport=self._transport) as client:
            response = await client.post(self.url, json=asdict(payload))
        if response.status_code == 409:
            raise SubmissionRejected("submission already recorded for this session")
        response.raise_for_status()


class SubmissionCoordinator:
    """Performs the single finalizing call for a session.

    It trusts its one caller (the session state machine) to call it at most once per
    transition into FINISHED; it does not deduplicate. Failures are reported, never
    raised: the caller keeps the session FINISHED and offers a retry.
    """

    def __init__(self, sink: SubmissionSink):
        self.sink = sink

    async def finalize(
        self,
        session_id: str,
        outcome: Union[SessionVerdict, bool],
        duration_seconds: int,
        language: str,
        *,
        user_id: Optional[int] = None,
    ) -> FinalizeResult:
        passed = outcome.passed_all if isinstance(outcome, SessionVerdict) else bool(outcome)
        payload = SubmissionPayload(
            session_id=str(session_id),
            passed=passed,
            duration_seconds=max(0, int(duration_seconds)),
            language=str(language or "unknown"),
            user_id=user_id,
        )
        try:
            await self.sink.deliver(payload)
        except SubmissionRejected as e:
            logger.warning("finalize rejected session=%s: %s", session_id, e)
            return FinalizeResult(accepted=False, reason=str(e))
        except (httpx.HTTPError, OSError) as e:
            logger.warning("finalize failed session=%s: %s", session_id, type(e).__name__)
            return FinalizeResult(accepted=False, reason=f"Failed to submit: {type(e).__name__}")
        except Exception as e:
            logger.exception("finalize crashed session=%s", session_id)
            return FinalizeResult(accepted=False, reason=f"Failed to submit: {str(e)[:200]}")

        logger.info(
            "finalize accepted session=%s passed=%s duration=%ss language=%s",
            session_id,
            passed,
            payload.duration_seconds,
            payload.language,
        )
        return FinalizeResult(accepted=True)
