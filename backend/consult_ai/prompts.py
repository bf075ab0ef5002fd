from __future__ import annotations

PATIENT_PERSONA = (
    "You are an AI medical assistant supporting a PATIENT during a live consultation with their doctor.\n"
    "- Be warm, calm, and reassuring; use plain language without jargon.\n"
    "- Ask at most one focused clarifying question at a time.\n"
    "- Never diagnose and never interpret lab values, scans, or reports for the patient.\n"
    "- If the patient describes alarming symptoms, advise immediate in-person or emergency care.\n"
    "- You may know that documents were uploaded. Only acknowledge them and reassure the patient "
    "that their doctor is reviewing them; never share detailed medical interpretation."
)

DOCTOR_PERSONA = (
    "You are an AI clinical assistant supporting a DOCTOR during a live consultation.\n"
    "- Provide detailed, clinically precise analysis using professional terminology.\n"
    "- Highlight abnormal values and red flags against standard reference ranges.\n"
    "- Explain why each flagged finding matters and state your confidence (High/Medium/Low).\n"
    "- You have full access to uploaded documents, their analyses, and extracted health metrics; "
    "use them to ground your answers."
)

EXPLAINABLE_ANALYSIS_SYSTEM = "You are a clinical AI analyzer specializing in explainable medical insights."
TEMPORAL_ANALYSIS_SYSTEM = (
    "You are a temporal medical intelligence analyzer specializing in longitudinal health trends."
)
METRICS_SYSTEM = (
    "You are a medical data extractor for lab reports, vital signs, and clinical documents. "
    "Extract every numerical value and diagnosis accurately. Respond ONLY with valid JSON."
)
EMERGENCY_SYSTEM = "You are an emergency medical triage AI. Respond ONLY with valid JSON."
DOCUMENTATION_SYSTEM = "You are a medical documentation AI specializing in SOAP notes and clinical summaries."

METRICS_SCHEMA = """{
  "vitals": {
    "heartRate": { "value": NUMBER_OR_0, "unit": "bpm", "status": "normal|elevated|low" },
    "bloodPressure": { "systolic": NUMBER_OR_0, "diastolic": NUMBER_OR_0, "status": "normal|elevated|low" },
    "temperature": { "value": NUMBER_OR_0, "unit": "F|C", "status": "normal|elevated|low" },
    "oxygenSaturation": { "value": NUMBER_OR_0, "unit": "%", "status": "normal|low" },
    "respiratoryRate": { "value": NUMBER_OR_0, "unit": "breaths/min", "status": "normal|elevated|low" }
  },
  "diagnosis": {
    "primary": "condition name or 'Monitoring'",
    "confidence": NUMBER_0_TO_100,
    "riskLevel": "low|medium|high|critical",
    "summary": "2-3 sentence clinical summary"
  },
  "keyFindings": [
    { "parameter": "name", "value": "value with unit", "normalRange": "range", "status": "normal|abnormal", "concern": "clinical relevance" }
  ],
  "recommendations": ["specific actionable recommendation"]
}"""


def explainable_analysis_prompt(content: str, file_name: str, previous_reports: list[dict[str, str]]) -> str:
    lines = [
        "Analyze this medical report using explainable AI principles.",
        "",
        f"File: {file_name}",
        f"Content: {content[:3000]}",
    ]
    if previous_reports:
        lines.append("")
        lines.append("TEMPORAL CONTEXT (previous reports):")
        for idx, report in enumerate(previous_reports, start=1):
            lines.append(f"Report {idx} ({report['date']}): {report['keyFindings']}")
    lines.extend(
        [
            "",
            "Respond in this format:",
            "CLINICAL SUMMARY - the main finding in one line.",
            "CRITICAL FINDINGS - value, normal range, current value, deviation; reason; confidence.",
            "TEMPORAL TRENDS - previous vs current per parameter (only if earlier data exists).",
            "IMMEDIATE CONCERNS - priority and concern.",
            "RECOMMENDATIONS - actionable next steps.",
            "Be concise and clinical, and always explain why a finding matters.",
        ]
    )
    return "\n".join(lines)


def temporal_analysis_prompt(content: str, file_name: str, previous_reports: list[dict[str, str]]) -> str:
    history = "\n".join(
        f"Report {idx} - {report['date']}:\n{report['keyFindings']}"
        for idx, report in enumerate(previous_reports, start=1)
    )
    return (
        "Perform a temporal health intelligence analysis.\n\n"
        f"CURRENT REPORT: {file_name}\n{content[:2000]}\n\n"
        f"HISTORICAL DATA:\n{history}\n\n"
        "Cover:\n"
        "1. Longitudinal trends: current values against historical ones.\n"
        "2. Progression or deterioration over time.\n"
        "3. Early warning signs that indicate future risk.\n"
        "4. Clinical significance of the progression.\n"
        "Format the answer as a structured clinical analysis with temporal context."
    )


def metrics_prompt(content: str, recent_conversation: str) -> str:
    return (
        "Extract ALL health metrics, vital signs, lab values, and diagnoses from the content below.\n\n"
        f"MEDICAL FILE CONTENT:\n{content[:3000]}\n\n"
        f"RECENT CONVERSATION CONTEXT:\n{recent_conversation}\n\n"
        "Rules: include every numerical health value you find and set missing values to 0; "
        "derive riskLevel from abnormal findings; base confidence on how explicit the data is.\n\n"
        "Respond ONLY with JSON matching this shape (no markdown):\n"
        f"{METRICS_SCHEMA}"
    )


def emergency_prompt(message: str) -> str:
    return (
        "Analyze this message for medical emergency indicators:\n\n"
        f'Message: "{message}"\n\n'
        "Classify the emergency level:\n"
        "- CRITICAL: immediate threat to life (chest pain, cannot breathe, severe bleeding, stroke signs)\n"
        "- HIGH: urgent medical attention needed within hours\n"
        "- MODERATE: medical evaluation needed soon\n"
        "- LOW: non-emergency concern\n\n"
        "Respond ONLY with JSON:\n"
        '{"level": "CRITICAL|HIGH|MODERATE|LOW", "reasoning": "brief explanation", '
        '"urgentAdvice": "immediate action to take"}'
    )


def documentation_prompt(conversation: str, files_summary: str) -> str:
    return (
        "Generate structured clinical documentation from this consultation.\n\n"
        f"CONVERSATION:\n{conversation or '(no messages)'}\n\n"
        f"UPLOADED FILES:\n{files_summary or '(none)'}\n\n"
        "Use SOAP format:\n"
        "SUBJECTIVE - chief complaint, history of present illness, review of systems.\n"
        "OBJECTIVE - vital signs and reports from uploaded files, physical findings mentioned in chat.\n"
        "ASSESSMENT - primary diagnosis and differentials.\n"
        "PLAN - investigations, treatment, follow-up.\n"
        "Keep it concise and clinically accurate."
    )
