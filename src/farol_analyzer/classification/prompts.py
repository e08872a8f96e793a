"""
AI prompts for contract classification and the parser for the model's answer.
"""

import json
import re
from typing import NamedTuple, Optional

from farol_analyzer.data.models import Confidence, ContractCategory
from farol_analyzer.data.preprocess import truncate_text

CLASSIFICATION_SYSTEM_PROMPT = """You are a Brazilian public contract classification expert. Your task is to classify government contracts into one of the following categories based on their object description and extracted text.

CATEGORIES:
1. OBRAS - Construction, infrastructure, civil engineering works, renovations, building projects
2. TI - Information Technology, software, hardware, IT services, digital systems
3. SAUDE - Healthcare, medical equipment, medicines, hospital services, health supplies
4. EDUCACAO - Education, training, courses, educational materials, school services
5. SERVICOS - General services like cleaning, security, consulting, maintenance (non-construction)
6. OUTROS - Only when the contract truly doesn't fit any of the above categories

CLASSIFICATION RULES:
- Analyze the contract object description first, then use extracted text for context
- Choose the most specific category that fits
- SERVICOS is for general services; use more specific categories when applicable
- Construction-related services (not just maintenance) should be OBRAS
- IT-related services and equipment should be TI
- Healthcare-related services and supplies should be SAUDE
- Education and training services should be EDUCACAO
- Only use OUTROS if the contract genuinely doesn't fit any category

OUTPUT FORMAT:
Respond with a valid JSON object:
{
  "category": "CATEGORY_NAME",
  "confidence": "high" | "medium" | "low",
  "reason": "Brief explanation in Portuguese (1-2 sentences)"
}

IMPORTANT:
- "confidence" should be "high" if the classification is clear, "medium" if there's some ambiguity, "low" if uncertain
- "reason" should explain why this category was chosen, mentioning key terms that led to the decision"""


class ParsedClassification(NamedTuple):
    category: ContractCategory
    confidence: Confidence
    reason: str


def format_brl(value: float) -> str:
    """R$ 1.234.567,89"""
    formatted = f"{value:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return f"R$ {formatted}"


def build_classification_prompt(
    object_description: str,
    extracted_text: Optional[str] = None,
    value: Optional[float] = None,
    agency_name: Optional[str] = None,
    max_text_length: int = 3000,
) -> str:
    """
    Build the user prompt for one contract.

    Args:
        object_description: Contract object text
        extracted_text: Optional longer text from the contract document
        value: Contract value, shown in BRL
        agency_name: Contracting agency
        max_text_length: Cut point for the extracted text

    Returns:
        Prompt text in Portuguese
    """
    prompt = f"Classifique o seguinte contrato público:\n\nOBJETO DO CONTRATO:\n{object_description}"

    if value:
        prompt += f"\n\nVALOR: {format_brl(value)}"

    if agency_name:
        prompt += f"\n\nÓRGÃO: {agency_name}"

    if extracted_text:
        if len(extracted_text) > max_text_length:
            extracted_text = extracted_text[:max_text_length] + "\n[... texto truncado ...]"
        prompt += f"\n\nTRECHO DO TEXTO DO CONTRATO:\n{extracted_text}"

    prompt += "\n\nResponda com o JSON de classificação."
    return prompt


def parse_classification_response(response: str) -> Optional[ParsedClassification]:
    """
    Parse the model answer into a classification.

    Markdown code fences and surrounding prose are tolerated. Anything that is
    not a JSON object with a known category, a known confidence and a string
    reason yields None.
    """
    if not isinstance(response, str):
        return None

    text = response
    fenced = re.search(r"```(?:json)?\s*([\s\S]*?)```", text)
    if fenced:
        text = fenced.group(1)

    obj = re.search(r"\{[\s\S]*\}", text)
    if obj:
        text = obj.group(0)

    try:
        parsed = json.loads(text)
    except ValueError:
        return None

    if not isinstance(parsed, dict):
        return None

    category = parsed.get("category")
    confidence = parsed.get("confidence")
    reason = parsed.get("reason")
    if not isinstance(category, str) or not isinstance(confidence, str) or not isinstance(reason, str):
        return None

    try:
        return ParsedClassification(
            ContractCategory(category.strip().upper()),
            Confidence(confidence.strip().lower()),
            truncate_text(reason.strip(), 500),
        )
    except ValueError:
        return None
