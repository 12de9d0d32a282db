"""
Filesystem-backed store of calls (the records being enriched).

Each call gets a directory holding its metadata document and, when uploaded
from a recording, a copy of the audio file.
"""

import logging
import shutil
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from ..enrichment.hashing import fingerprint_file
from ..errors import AccessDeniedError, EntityNotFoundError, InvalidTransitionError
from .models import Call, TranscriptionStatus, to_local_naive
from .storage import is_safe_key, read_json, write_json_atomic

logger = logging.getLogger(__name__)


class CallStore:
    """Manages call records and their transcripts."""

    def __init__(self, calls_dir: Union[str, Path] = "server_data/calls"):
        self.calls_dir = Path(calls_dir)
        self.calls_dir.mkdir(parents=True, exist_ok=True)

        self.FILES = {
            "metadata": "call.json",
            "audio": "audio",
        }

        self._lock = threading.Lock()

    def create_call(
        self,
        owner_id: str,
        audio_file_path: Optional[str] = None,
        original_filename: str = "",
        text: Optional[str] = None,
        call_time: Optional[datetime] = None,
        duration_seconds: Optional[float] = None,
        language: Optional[str] = None,
    ) -> Call:
        """
        Create a call from an uploaded recording or an imported transcript.

        Args:
            owner_id: User who owns the call
            audio_file_path: Recording to copy into the call directory
            original_filename: Name of the uploaded file
            text: Transcript, for calls imported already transcribed
            call_time: When the call took place
            duration_seconds: Call length
            language: Transcript language

        Returns:
            The new call
        """
        call_id = str(uuid.uuid4())
        call = Call(
            id=call_id,
            owner_id=owner_id,
            created_at=datetime.now(),
            original_filename=original_filename,
            call_time=to_local_naive(call_time) or datetime.now(),
            duration_seconds=duration_seconds,
            language=language,
        )

        if audio_file_path:
            suffix = Path(original_filename or audio_file_path).suffix.lower()
            target_path = self.get_call_dir(call_id) / f"{self.FILES['audio']}{suffix}"
            target_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(audio_file_path, target_path)
            call.audio_path = str(target_path)
            call.audio_digest = fingerprint_file(target_path)

        if text is not None:
            call.text = text
            call.transcription_status = TranscriptionStatus.COMPLETED

        self._save(call)
        logger.info(f"Created call {call_id} for user {owner_id}")
        return call

    def get(self, call_id: str) -> Call:
        """Get a call by id."""
        if not is_safe_key(call_id):
            raise EntityNotFoundError(call_id)

        data = read_json(self.get_call_dir(call_id) / self.FILES["metadata"])
        if not data:
            raise EntityNotFoundError(call_id)
        return Call.from_dict(data)

    def get_for_user(self, call_id: str, user_id: str) -> Call:
        """Get a call, checking that ``user_id`` owns it."""
        call = self.get(call_id)
        if call.owner_id != user_id:
            raise AccessDeniedError(call_id, user_id)
        return call

    def list_ids_for_owner(self, owner_id: str) -> List[str]:
        """Ids of every call the user may access."""
        return [call.id for call in self.list_calls() if call.owner_id == owner_id]

    def list_calls(self) -> List[Call]:
        calls = []
        for call_dir in self.calls_dir.iterdir():
            if not call_dir.is_dir():
                continue
            data = read_json(call_dir / self.FILES["metadata"])
            if data:
                calls.append(Call.from_dict(data))

        calls.sort(key=lambda c: c.created_at, reverse=True)
        return calls

    def save_transcription(
        self, call_id: str, text: str, language: Optional[str] = None, duration_seconds: Optional[float] = None
    ) -> Call:
        """
        Store the transcript produced by a transcription job.

        A forced re-transcription of a completed call replaces the transcript
        and counts as an edit.
        """
        with self._lock:
            call = self.get(call_id)
            if call.transcription_status == TranscriptionStatus.COMPLETED:
                call.edit_count += 1
            call.text = text
            call.transcription_status = TranscriptionStatus.COMPLETED
            if language:
                call.language = language
            if duration_seconds is not None and call.duration_seconds is None:
                call.duration_seconds = duration_seconds
            self._save(call)
        return call

    def edit_transcript(self, call_id: str, user_id: str, text: str) -> Call:
        """
        Manually edit a completed transcript.

        Increments the edit counter; the new text hashes differently, so
        cached insights and embeddings stop matching.
        """
        with self._lock:
            call = self.get_for_user(call_id, user_id)
            if call.transcription_status != TranscriptionStatus.COMPLETED:
                raise InvalidTransitionError(f"Call {call_id} has no completed transcript to edit")

            call.text = text
            call.edit_count += 1
            self._save(call)

        logger.info(f"Transcript of call {call_id} edited (edit #{call.edit_count})")
        return call

    def get_call_dir(self, call_id: str) -> Path:
        """Get the directory path for a call."""
        return self.calls_dir / call_id

    def _save(self, call: Call) -> None:
        write_json_atomic(self.get_call_dir(call.id) / self.FILES["metadata"], call.to_dict())
