"""Versioned prompt templates for each worker kind."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class PromptTemplate:
    name: str
    version: str
    text: str

    @property
    def ref(self) -> str:
        return f"{self.name}@{self.version}"

    def render(self, **values: object) -> str:
        return self.text.format(**values)


TRANSCRIBE_PROMPT = PromptTemplate(
    name="transcribe",
    version="v1",
    text="""\
You are transcribing a recorded meeting.

Audio object: {file_key} ({size_bytes} bytes, sha256 {sha256})
Expected language: {language}

Return only a JSON object with the keys:
- "text": the full transcript as plain text
- "segments": a list of {{"speaker", "start", "end", "text"}} objects in seconds
- "language": the detected language code
- "confidence": a number between 0 and 1
""",
)

MEANING_PROMPT = PromptTemplate(
    name="meaning",
    version="v1",
    text="""\
Analyze the following meeting transcription and extract structured meaning.

Transcription:
{transcript}

Provide:
1. 3-5 key goals discussed
2. 3-5 specific requirements mentioned
3. 3-5 action items with owners
4. 3-5 key decisions made
5. 5-10 key points
6. An overall confidence score between 0 and 1
7. A brief executive summary

Return only a JSON object with the keys "goals", "requirements", "action_items",
"decisions", "key_points", "confidence" and "summary".
""",
)

DOCUMENT_PROMPT = PromptTemplate(
    name="document",
    version="v1",
    text="""\
Generate a professional {document_type} document from the following meaning data.

MEANING DATA:
{meaning}

TEMPLATE:
{template}

SCHEMA:
{schema}

Requirements:
1. Follow the template and schema
2. Include all relevant sections
3. Use professional language and formatting
4. Include a confidence score and any warnings

Return only a JSON object with the keys "content" (markdown), "metadata",
"sections" (list of {{"title", "content", "level"}}), "confidence" and "warnings".
""",
)

CODEGEN_PROMPT = PromptTemplate(
    name="codegen",
    version="v1",
    text="""\
Generate a {target_language} implementation{framework_clause} for the following document.

DOCUMENT:
{document}

Additional requirements:
{requirements}

Return only a JSON object with the keys "files" (list of {{"path", "content", "language"}}),
"structure", "summary", "confidence" and "warnings".
""",
)

DOCUMENT_TEMPLATES: dict[str, str] = {
    "PRD": """\
# Product Requirements Document

## 1. Overview
## 2. Goals
## 3. Requirements
## 4. User Stories
## 5. Technical Specifications
## 6. Success Metrics""",
    "TechnicalSpec": """\
# Technical Specification

## 1. System Overview
## 2. API Specifications
## 3. Data Models
## 4. Integration Points
## 5. Security Requirements""",
    "Report": """\
# Analysis Report

## 1. Executive Summary
## 2. Methodology
## 3. Findings
## 4. Recommendations
## 5. Conclusion""",
    "Custom": """\
# Custom Document

[Custom content based on provided schema]""",
}

DOCUMENT_SCHEMAS: dict[str, dict[str, list[str]]] = {
    "PRD": {
        "sections": [
            "Overview",
            "Goals",
            "Requirements",
            "User Stories",
            "Technical Specifications",
            "Success Metrics",
        ],
    },
    "TechnicalSpec": {
        "sections": [
            "System Overview",
            "API Specifications",
            "Data Models",
            "Integration Points",
            "Security Requirements",
        ],
    },
    "Report": {
        "sections": [
            "Executive Summary",
            "Methodology",
            "Findings",
            "Recommendations",
            "Conclusion",
        ],
    },
    "Custom": {"sections": ["Custom content"]},
}
