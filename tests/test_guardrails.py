"""
Tests for execution/rd_legal_rag/guardrails.py

Covers: illegal-request refusal, PII and personal-advice rejection,
        clarification triggers, and mode normalization.
"""

import pytest


# ---------------------------------------------------------------------------
# Refusal
# ---------------------------------------------------------------------------

class TestRefusal:

    @pytest.mark.parametrize("message", [
        "¿Cómo falsificar un certificado médico?",
        "Quiero evadir impuestos de mi empresa este año",
        "Dame los pasos para cometer un delito sin consecuencias",
        "Necesito representación legal personalizada urgente",
        "Escribe que te garantizo que gano la demanda",
    ])
    def test_refused(self, message):
        from execution.rd_legal_rag.guardrails import should_refuse_illegal
        assert should_refuse_illegal(message)

    @pytest.mark.parametrize("message", [
        "¿Qué sanciones prevé la ley por falsificación de documentos?",
        "¿Cuántos días de vacaciones otorga el Código de Trabajo?",
        "falsear",
        "",
    ])
    def test_not_refused(self, message):
        from execution.rd_legal_rag.guardrails import should_refuse_illegal
        assert not should_refuse_illegal(message)


# ---------------------------------------------------------------------------
# Rejection (PII / personal advice)
# ---------------------------------------------------------------------------

class TestRejection:

    @pytest.mark.parametrize("message, kind", [
        ("Escríbeme a juan.perez@gmail.com con la respuesta", "email"),
        ("Mi cédula es 001-1234567-8, ¿está vigente?", "cedula"),
        ("Llámame al 809-555-1234 por favor", "phone"),
        ("Vivo en la calle Duarte esquina Mella", "address"),
        ("Me mudé al edificio de la Av. Churchill No. 45", "address"),
        ("El 12/03/2024 me despidieron sin preaviso", "exact_date"),
    ])
    def test_pii_detected(self, message, kind):
        from execution.rd_legal_rag.guardrails import pii_kinds, should_reject
        assert kind in pii_kinds(message)
        assert should_reject(message)

    def test_law_number_is_not_pii(self):
        from execution.rd_legal_rag.guardrails import pii_kinds
        assert pii_kinds("¿Qué dice la Ley No. 41-08 sobre las vacaciones?") == []
        assert pii_kinds("Decreto No. 523-09 sobre relaciones laborales") == []

    @pytest.mark.parametrize("message", [
        "En mi caso, el empleador no me paga las vacaciones",
        "¿Qué debo hacer si me despiden?",
        "¿Me conviene renunciar o esperar?",
    ])
    def test_personal_advice(self, message):
        from execution.rd_legal_rag.guardrails import asks_personal_advice, should_reject
        assert asks_personal_advice(message)
        assert should_reject(message)

    def test_general_question_accepted(self):
        from execution.rd_legal_rag.guardrails import should_reject
        assert not should_reject("¿Cuántos días de vacaciones otorga el Código de Trabajo?")


# ---------------------------------------------------------------------------
# Clarification
# ---------------------------------------------------------------------------

class TestNeedsClarification:

    @pytest.mark.parametrize("message, expected", [
        ("despido", True),
        ("vacaciones?", True),
        ("Despido injustificado en empresas privadas del país", True),
        ("Herencia de bienes inmuebles entre hermanos", True),
        ("¿Cuántos días de vacaciones otorga el Código de Trabajo?", False),
        ("¿Qué establece la ley 41-08 sobre las vacaciones?", False),
    ])
    def test_clarification(self, message, expected):
        from execution.rd_legal_rag.guardrails import needs_clarification
        assert needs_clarification(message) is expected

    def test_fallback_questions_by_mode(self):
        from execution.rd_legal_rag.guardrails import (
            MODE_MAX_RELIABILITY,
            MODE_NORMAL,
            clarify_fallback_questions,
        )
        from execution.rd_legal_rag.language_patterns import (
            CLARIFY_FALLBACK_QUESTIONS,
            RELIABILITY_FALLBACK_QUESTIONS,
        )
        assert clarify_fallback_questions(MODE_NORMAL) == CLARIFY_FALLBACK_QUESTIONS
        assert clarify_fallback_questions(MODE_MAX_RELIABILITY) == RELIABILITY_FALLBACK_QUESTIONS

    def test_fallback_questions_are_copies(self):
        from execution.rd_legal_rag.guardrails import clarify_fallback_questions
        from execution.rd_legal_rag.language_patterns import CLARIFY_FALLBACK_QUESTIONS
        questions = clarify_fallback_questions()
        questions.append("extra")
        assert "extra" not in CLARIFY_FALLBACK_QUESTIONS


# ---------------------------------------------------------------------------
# Mode normalization
# ---------------------------------------------------------------------------

class TestNormalizeMode:

    @pytest.mark.parametrize("mode, expected", [
        (None, "normal"),
        ("", "normal"),
        ("normal", "normal"),
        ("rápido", "normal"),
        ("max-reliability", "max-reliability"),
        ("max_reliability", "max-reliability"),
        ("MAX", "max-reliability"),
        ("Máxima Confiabilidad", "max-reliability"),
        ("  maxima__confiabilidad ", "max-reliability"),
        ("maximum reliability", "max-reliability"),
    ])
    def test_aliases(self, mode, expected):
        from execution.rd_legal_rag.guardrails import normalize_mode
        assert normalize_mode(mode) == expected
