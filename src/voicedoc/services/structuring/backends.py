from __future__ import annotations

import json
from typing import Dict, List, Optional, Protocol, Tuple

from src.voicedoc.config import settings
from src.voicedoc.domain.models.documentation_session import SessionCategory
from src.voicedoc.domain.models.jobs import StructuredNoteResult
from src.voicedoc.domain.models.subject_context import SubjectContext
from src.voicedoc.infra.remote.client import RemoteApiClient


class NoteStructuringBackend(Protocol):
    """Protocol for the remote note-structuring capability."""

    async def structure(
        self,
        transcript: str,
        *,
        category: SessionCategory,
        note_format: str,
        context: Optional[SubjectContext] = None,
        include_timestamps: bool = True,
    ) -> StructuredNoteResult:  # pragma: no cover - interface
        raise NotImplementedError


# Section headings per note format. Unknown formats fall back to a single
# free-text section.
NOTE_FORMAT_SECTIONS: Dict[str, List[str]] = {
    "SOAP": ["Subjective", "Objective", "Assessment", "Plan"],
    "DAP": ["Data", "Assessment", "Plan"],
    "BIRP": ["Behavior", "Intervention", "Response", "Plan"],
}

# Keyword -> diagnosis label used by the demo backend.
DEMO_DIAGNOSIS_KEYWORDS: List[Tuple[str, str]] = [
    ("diabetes", "E11.9 Type 2 diabetes mellitus"),
    ("hypertension", "I10 Essential hypertension"),
    ("anxiety", "F41.1 Generalized anxiety disorder"),
    ("depression", "F32.9 Major depressive disorder"),
    ("back pain", "M54.50 Low back pain"),
]

# One demo service code per session category.
DEMO_CATEGORY_CODES: Dict[SessionCategory, str] = {
    SessionCategory.EVALUATION: "90791",
    SessionCategory.TREATMENT: "90837",
    SessionCategory.PROGRESS_NOTE: "99213",
    SessionCategory.DISCHARGE: "99238",
    SessionCategory.CONSULTATION: "99242",
}


class DemoNoteStructuringBackend:
    """Deterministic structuring backend used for tests and prototyping.

    Echoes the transcript into the first section of the requested format and
    extracts diagnoses by keyword, so higher layers have stable output without
    any external services.
    """

    async def structure(
        self,
        transcript: str,
        *,
        category: SessionCategory,
        note_format: str,
        context: Optional[SubjectContext] = None,
        include_timestamps: bool = True,
    ) -> StructuredNoteResult:
        sections = NOTE_FORMAT_SECTIONS.get(note_format.upper(), ["Note"])
        lines = []
        if context is not None and context.patient is not None and context.patient.name:
            lines.append(f"Patient: {context.patient.name}")
        lines.append(f"{sections[0]}: {transcript.strip()}")
        lines.extend(f"{title}: demo placeholder" for title in sections[1:])

        lower = transcript.lower()
        diagnoses = [label for keyword, label in DEMO_DIAGNOSIS_KEYWORDS if keyword in lower]
        return StructuredNoteResult(
            note="\n".join(lines),
            codes=[DEMO_CATEGORY_CODES[category]],
            diagnoses=diagnoses,
        )


class HttpNoteStructuringBackend:
    """Calls the documentation API's ``/ai/structure-note`` endpoint."""

    def __init__(self, client: RemoteApiClient | None = None) -> None:
        self._client = client or RemoteApiClient()

    async def structure(
        self,
        transcript: str,
        *,
        category: SessionCategory,
        note_format: str,
        context: Optional[SubjectContext] = None,
        include_timestamps: bool = True,
    ) -> StructuredNoteResult:
        patient = context.patient.model_dump() if context is not None and context.patient is not None else None
        data = await self._client.post_json(
            "/ai/structure-note",
            {
                "transcript": transcript,
                "sessionType": category.value,
                "format": note_format,
                "patientInfo": patient,
                "includeTimestamps": include_timestamps,
            },
        )
        note = data.get("structuredNote") if isinstance(data, dict) else None
        if not isinstance(note, str):
            raise RuntimeError("Structuring response missing 'structuredNote'")
        # Codes and diagnoses are optional in the response.
        return StructuredNoteResult(
            note=note,
            codes=list(data.get("cptCodes") or []),
            diagnoses=list(data.get("diagnosis") or []),
        )

    async def aclose(self) -> None:
        await self._client.close()


class LLMNoteStructuringBackend:
    """Structuring backend that uses an LLM via the OpenAI Python client.

    Expects OPENAI_API_KEY to be set and uses the model name from LLM_MODEL.
    The model is asked for compact JSON with ``note``, ``codes`` and
    ``diagnoses`` keys.
    """

    def __init__(self, model: str | None = None) -> None:  # pragma: no cover - external service
        self._model = model or settings.llm_model
        self._client = None

    def _get_client(self):  # pragma: no cover - external service
        if self._client is not None:
            return self._client

        api_key = settings.openai_api_key
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY must be set to use LLMNoteStructuringBackend")

        try:
            from openai import AsyncOpenAI
        except ImportError as exc:
            raise RuntimeError(
                "LLMNoteStructuringBackend requires the 'openai' package. Install it with 'pip install openai'"
            ) from exc

        self._client = AsyncOpenAI(api_key=api_key)
        return self._client

    async def aclose(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.close()

    async def structure(
        self,
        transcript: str,
        *,
        category: SessionCategory,
        note_format: str,
        context: Optional[SubjectContext] = None,
        include_timestamps: bool = True,
    ) -> StructuredNoteResult:  # pragma: no cover - external service
        client = self._get_client()
        sections = ", ".join(NOTE_FORMAT_SECTIONS.get(note_format.upper(), ["Note"]))
        prompt = {
            "role": "user",
            "content": (
                "You are a clinical documentation assistant. Given the following "
                f"{category.value.replace('_', ' ')} session transcript, write a "
                f"{note_format} note with the sections: {sections}. "
                "Respond ONLY as compact JSON with keys 'note' (string), "
                "'codes' (list of billing code strings) and 'diagnoses' (list of "
                "strings). Do not include markdown or explanations.\n\n"
                f"Transcript:\n{transcript}\n"
            ),
        }

        response = await client.responses.create(model=self._model, input=[prompt])

        raw_text: str | None = None
        for output in response.output:
            for item in getattr(output, "content", None) or []:
                if getattr(item, "type", "") == "output_text" and getattr(item, "text", None):
                    raw_text = item.text
                    break
            if raw_text is not None:
                break

        if not raw_text:
            raise RuntimeError("LLM returned no text output")

        data = json.loads(raw_text)
        return StructuredNoteResult(
            note=str(data.get("note") or ""),
            codes=[str(c) for c in data.get("codes") or []],
            diagnoses=[str(d) for d in data.get("diagnoses") or []],
        )


demo_structuring_backend = DemoNoteStructuringBackend()


def get_structuring_backend_from_env() -> NoteStructuringBackend:
    """Select a structuring backend based on STRUCTURING_BACKEND.

    - "http" → HttpNoteStructuringBackend
    - "llm" → LLMNoteStructuringBackend
    - anything else (or unset) → DemoNoteStructuringBackend
    """

    backend_name = settings.structuring_backend.lower()
    if backend_name == "http":
        return HttpNoteStructuringBackend()
    if backend_name == "llm":
        return LLMNoteStructuringBackend()
    return demo_structuring_backend
