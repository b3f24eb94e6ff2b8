"""Response schemas and safety settings sent with every model request."""

from google.genai import types

REFINEMENT_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "start": {"type": "STRING", "description": "HH:MM:SS,mmm relative to the audio clip"},
            "end": {"type": "STRING", "description": "HH:MM:SS,mmm relative to the audio clip"},
            "text": {"type": "STRING"},
        },
        "required": ["start", "end", "text"],
    },
}

TRANSLATION_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "id": {"type": "INTEGER"},
            "text_original": {"type": "STRING"},
            "text_translated": {"type": "STRING"},
        },
        "required": ["id", "text_translated"],
    },
}

BATCH_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "id": {"type": "INTEGER"},
            "start": {"type": "STRING"},
            "end": {"type": "STRING"},
            "text_original": {"type": "STRING"},
            "text_translated": {"type": "STRING"},
            "comment": {"type": "STRING"},
        },
        "required": ["id", "start", "end", "text_original", "text_translated"],
    },
}

# Film dialogue routinely trips the default filters.
SAFETY_SETTINGS = [
    types.SafetySetting(category=category, threshold=types.HarmBlockThreshold.BLOCK_NONE)
    for category in (
        types.HarmCategory.HARM_CATEGORY_HARASSMENT,
        types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
        types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
        types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
    )
]
