"""OpenAI wrapper: knowledge base answers and hosted OCR."""
from __future__ import annotations

import base64
import json
import logging
import os
import re
from typing import Any, Dict, List, Optional, Tuple

from flask import current_app, has_app_context

try:
    from openai import OpenAI
except Exception:
    OpenAI = None

logger = logging.getLogger(__name__)

OCR_INSTRUCTION = (
    "Extract all text content from this image. Only return the transcribed text, "
    "with no additional commentary, formatting, or explanations."
)

ANSWER_SYSTEM_PROMPT = """You are a helpful and polite support assistant for a knowledge base.
Your primary goal is to provide clear, easy-to-understand, step-by-step answers to the user's questions based *exclusively* on the provided text context.

- Maintain a friendly and professional tone.
- Break down procedures into numbered steps.
- Format the answer using Markdown.
- Do not use external knowledge.
- If the context does not contain the answer, say that the information is not available.
- Cite the sources you used. Each context block starts with a [Document: <name>, Location: <location>] tag.
- Return ONLY valid JSON of the form {"answer": "...", "sources": [{"document": "...", "location": "..."}]} with no code fences."""

ANSWER_SCHEMA: Dict[str, Any] = {
    "answer": "",
    "sources": [],
}


def _setting(key: str, default: str = "") -> str:
    if has_app_context():
        value = current_app.config.get(key)
        if value:
            return str(value).strip()
    return (os.getenv(key, "") or default).strip()


def client_ready() -> Tuple[bool, str]:
    if OpenAI is None:
        return False, "OpenAI SDK not installed"
    if not _setting("OPENAI_API_KEY"):
        return False, "OPENAI_API_KEY is missing"
    return True, ""


def model_name() -> str:
    return _setting("OPENAI_MODEL") or "gpt-4.1"


def ocr_model_name() -> str:
    return _setting("OPENAI_OCR_MODEL") or model_name()


def get_client():
    ok, _ = client_ready()
    if not ok:
        return None
    return OpenAI(api_key=_setting("OPENAI_API_KEY"), timeout=120)


def safe_json_loads(s: str) -> Tuple[Optional[Dict[str, Any]], str]:
    if not s:
        return None, "Empty model output"

    # Strip markdown code blocks if present
    text = s.strip()
    if text.startswith("```"):
        lines = text.split("\n", 1)
        if len(lines) > 1:
            text = lines[1]
        if text.endswith("```"):
            text = text[:-3].strip()
        elif "```" in text:
            text = text.rsplit("```", 1)[0].strip()

    try:
        obj = json.loads(text)
        if isinstance(obj, dict):
            return obj, ""
    except ValueError:
        pass

    # Fallback: first JSON object in the text
    m = re.search(r"\{.*\}", text, flags=re.DOTALL)
    if m:
        try:
            obj = json.loads(m.group(0))
            if isinstance(obj, dict):
                return obj, ""
        except ValueError:
            pass
    return None, "Model did not return valid json"


def validate_and_repair_answer(obj: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Coerce model output into {"answer": str, "sources": [{"document", "location"}]}."""
    if not obj or not isinstance(obj, dict):
        return dict(ANSWER_SCHEMA, sources=[])

    sources: List[Dict[str, str]] = []
    for src in obj.get("sources") or []:
        if not isinstance(src, dict):
            continue
        document = str(src.get("document") or "").strip()
        if not document:
            continue
        sources.append({"document": document, "location": str(src.get("location") or "").strip()})

    answer = obj.get("answer")
    return {"answer": "" if answer is None else str(answer), "sources": sources}


def answer_from_knowledge_base(question: str, context: str) -> Tuple[Optional[Dict[str, Any]], str]:
    if not (question or "").strip():
        return None, "Missing question"
    if not (context or "").strip():
        return None, "Missing context"

    client = get_client()
    if client is None:
        ok, msg = client_ready()
        return None, msg or "Client not available"
    try:
        res = client.chat.completions.create(
            model=model_name(),
            messages=[
                {"role": "system", "content": ANSWER_SYSTEM_PROMPT},
                {"role": "user", "content": f"CONTEXT:\n---\n{context}\n---\n\nQUESTION: {question}"},
            ],
            response_format={"type": "json_object"},
            temperature=0.2,
        )
        text = (res.choices[0].message.content or "").strip()
    except Exception as e:
        logger.error("Answer request failed: %s", e)
        return None, f"LLM request failed: {type(e).__name__}: {e}"

    obj, err = safe_json_loads(text)
    if err:
        return None, err
    return validate_and_repair_answer(obj), ""


def ocr_image(image: bytes, mime_type: str) -> Tuple[str, str]:
    """Transcribe an image with a hosted vision model."""
    if not image:
        return "", "Missing image"
    client = get_client()
    if client is None:
        ok, msg = client_ready()
        return "", msg or "Client not available"

    data_url = f"data:{mime_type or 'image/jpeg'};base64,{base64.b64encode(image).decode('ascii')}"
    try:
        res = client.chat.completions.create(
            model=ocr_model_name(),
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "image_url", "image_url": {"url": data_url}},
                        {"type": "text", "text": OCR_INSTRUCTION},
                    ],
                },
            ],
            temperature=0.0,
        )
        return (res.choices[0].message.content or "").strip(), ""
    except Exception as e:
        logger.error("OCR request failed: %s", e)
        return "", f"OCR request failed: {type(e).__name__}: {e}"
