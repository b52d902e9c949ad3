"""OCR engine selection.

``OCR_ENGINE=openai`` (default) sends images to the hosted vision model;
``OCR_ENGINE=tesseract`` runs pytesseract locally.
"""
from __future__ import annotations

import io
import os
import shutil
from typing import Tuple

from flask import current_app, has_app_context

from knowledgebase.services import openai_service

try:
    from PIL import Image
except Exception:
    Image = None

try:
    import pytesseract
except Exception:
    pytesseract = None

# Ensure pytesseract can find the tesseract binary
if pytesseract is not None and shutil.which("tesseract") is None:
    for cand in ("/usr/bin/tesseract", "/usr/local/bin/tesseract"):
        if os.path.exists(cand):
            pytesseract.pytesseract.tesseract_cmd = cand
            break


def engine() -> str:
    if has_app_context():
        name = current_app.config.get("OCR_ENGINE") or "openai"
    else:
        name = os.getenv("OCR_ENGINE", "openai")
    return name.strip().lower()


def tesseract_ready() -> Tuple[bool, str]:
    if Image is None:
        return False, "Pillow not available"
    if pytesseract is None:
        return False, "pytesseract not available"
    try:
        _ = pytesseract.get_tesseract_version()
    except Exception as e:
        return False, f"tesseract not available: {e}"
    return True, ""


def ocr_ready() -> Tuple[bool, str]:
    if engine() == "tesseract":
        return tesseract_ready()
    return openai_service.client_ready()


def _prep(img):
    g = img.convert("L")
    return Image.eval(g, lambda x: 0 if x < 15 else (255 if x > 240 else x))


def tesseract_image(image: bytes) -> Tuple[str, str]:
    ok, msg = tesseract_ready()
    if not ok:
        return "", msg
    try:
        img = _prep(Image.open(io.BytesIO(image)))
        return (pytesseract.image_to_string(img, config="--psm 6") or "").strip(), ""
    except Exception as e:
        return "", f"Image OCR failed: {e}"


def ocr_image(image: bytes, mime_type: str = "image/jpeg") -> Tuple[str, str]:
    if engine() == "tesseract":
        return tesseract_image(image)
    return openai_service.ocr_image(image, mime_type)
