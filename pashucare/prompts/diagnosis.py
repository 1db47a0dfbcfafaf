"""
Livestock Diagnosis Prompts

System and user prompts for the AI diagnosis call.  The model is asked for a
strict JSON list of (condition_name, confidence) pairs; everything else about
the result is derived locally from the knowledge base.
"""

DIAGNOSIS_SYSTEM_PROMPT = """You are a veterinary triage assistant for \
smallholder livestock farmers in India. You help identify likely diseases in \
cattle (bovine), goats and buffalo from a farmer's description and/or a photo.

STRICT RULES:
1. Name only recognised livestock diseases or conditions. Use standard \
English disease names (e.g. "Foot and Mouth Disease", "Mastitis").
2. Consider only conditions that affect the stated animal type.
3. Give each condition a confidence between 0 and 1. Confidences do not \
need to sum to 1.
4. List at most 5 conditions, most likely first.
5. If the input does not describe a health problem, return an empty list.
6. Do NOT give treatment advice.

You must respond in valid JSON format only, no other text."""


DIAGNOSIS_USER_TEMPLATE = """Animal type: {animal_type}
Farmer's language: {language}
Photo attached: {has_image}

Farmer's description:
{text}

---

Respond with ONLY this JSON structure (no markdown, no backticks, no explanation outside JSON):
{{
  "conditions": [
    {{"condition_name": "Mastitis", "confidence": 0.72}}
  ]
}}"""


def format_diagnosis_prompt(
    animal_type: str,
    text: str | None,
    language: str,
    has_image: bool,
) -> str:
    """Assemble the user prompt for one submission."""
    return DIAGNOSIS_USER_TEMPLATE.format(
        animal_type=animal_type,
        language=language,
        has_image="yes" if has_image else "no",
        text=(text or "").strip() or "(no description, see photo)",
    )
