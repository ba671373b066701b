"""All prompt templates for the chat memory extractor."""


EXTRACTION_SYSTEM_PROMPT = """\
You are a medical information extraction specialist. Extract key medical \
information from conversations that would be valuable for continuity of care.\
"""


# ---------------------------------------------------------------------------
# Per-chunk extraction prompt
# ---------------------------------------------------------------------------
EXTRACTION_PROMPT = """\
Analyze this medical conversation and extract important details that should be
remembered for future sessions. Focus on key medical information that would be
valuable for continuity of care.

CONVERSATION:
{conversation}

Extract the following types of information if present:
{taxonomy}

For each extracted item, provide:
  - type: one of {type_names}
  - summary: brief description (max 50 words)
  - details: structured data with specific information for that type
      symptom         -> symptom, duration, frequency, severity, triggers[]
      medication      -> medication, dosage, frequency, response
      medical_history -> condition, date, status
      lifestyle       -> one key per factor (sleep, diet, exercise, stress, ...)
      preference      -> one key per preference
      concern         -> concern, severity
      follow_up       -> follow_up, due
  - confidence: 0.0-1.0 how confident you are this is accurate
  - importance: 0.0-1.0 how important this is for future sessions
  - symptoms: array of related symptoms if applicable
  - tags: array of relevant tags
  - sourceMessages: array of key phrases from the conversation

Only include items that are medically relevant and would be useful for future
sessions. Only extract what the USER says about themselves, not the
assistant's suggestions. If nothing important is found, return [].

Example response:
[
  {{
    "type": "symptom",
    "summary": "Recurring headaches for 2 weeks",
    "details": {{
      "symptom": "headaches",
      "duration": "2 weeks",
      "frequency": "daily",
      "severity": "moderate",
      "triggers": ["stress", "lack of sleep"]
    }},
    "confidence": 0.9,
    "importance": 0.8,
    "symptoms": ["headaches"],
    "tags": ["neurological", "recurring"],
    "sourceMessages": ["I've been having headaches every day for two weeks"]
  }}
]

Return ONLY a valid JSON array. No markdown. No code fences. No commentary.\
"""


TAXONOMY = {
    "symptom": "SYMPTOMS - Current or recurring symptoms mentioned",
    "medication": "MEDICATIONS - Current medications, past medications, medication responses",
    "medical_history": "MEDICAL_HISTORY - Past diagnoses, surgeries, medical events",
    "lifestyle": "LIFESTYLE - Diet, exercise, sleep patterns, stress factors",
    "preference": "PREFERENCES - Communication preferences, treatment preferences",
    "concern": "CONCERNS - Main health concerns or worries expressed",
    "follow_up": "FOLLOW_UP - Items that need follow-up or monitoring",
}


# ---------------------------------------------------------------------------
# Deterministic summary sections: (label, UserContext attribute, limit)
# ---------------------------------------------------------------------------
SUMMARY_SECTIONS = (
    ("Previous Symptoms", "previous_symptoms", 5),
    ("Current Medications", "current_medications", 5),
    ("Medical History", "medical_history", 3),
    ("Previous Concerns", "previous_concerns", 3),
    ("Lifestyle Factors", "lifestyle_factors", 3),
    ("Follow-up Needed", "follow_up_needed", 3),
)

SEMANTIC_CONTEXT_HEADER = "**Previous Session Context:**"
