"""
Tests for execution/rd_legal_rag/claim_verification.py

Covers: article mention extraction, stripping of unverified article
        sentences, legal-claim extraction and phrase/reference support.
"""

import pytest

from conftest import SAMPLE_LEY_41_08


# ---------------------------------------------------------------------------
# Article mentions
# ---------------------------------------------------------------------------

class TestArticleMentions:

    def test_extracts_both_forms(self):
        from execution.rd_legal_rag.claim_verification import extract_article_mentions
        mentions = extract_article_mentions("Según el Art. 57 y el artículo   58, y de nuevo el art. 57.")
        assert mentions == ["art. 57", "artículo 58"]

    def test_no_mentions(self):
        from execution.rd_legal_rag.claim_verification import extract_article_mentions
        assert extract_article_mentions("Los servidores públicos tienen vacaciones.") == []

    def test_all_present_leaves_answer_unchanged(self):
        from execution.rd_legal_rag.claim_verification import strip_unverified_articles
        answer = "El artículo 57 reconoce vacaciones. El artículo 58 prohíbe compensarlas."
        result = strip_unverified_articles(answer, SAMPLE_LEY_41_08)
        assert result.cleaned == answer
        assert result.caveat == ""
        assert result.unverified == []

    def test_strips_sentence_with_unknown_article(self):
        from execution.rd_legal_rag.claim_verification import strip_unverified_articles
        answer = "El artículo 57 reconoce vacaciones. El artículo 99 dispone otra cosa. Fin del resumen."
        result = strip_unverified_articles(answer, SAMPLE_LEY_41_08)
        assert result.cleaned == "El artículo 57 reconoce vacaciones. Fin del resumen."
        assert result.unverified == ["artículo 99"]
        assert result.caveat == "No verificado en fuentes cargadas: artículo 99."

    def test_digit_boundary(self):
        from execution.rd_legal_rag.claim_verification import unverified_article_mentions
        # "artículo 5" must not be satisfied by "artículo 57"
        assert unverified_article_mentions("Ver artículo 5.", SAMPLE_LEY_41_08) == ["artículo 5"]


# ---------------------------------------------------------------------------
# Legal claims
# ---------------------------------------------------------------------------

class TestLegalClaims:

    def test_extracts_sentences_with_triggers(self):
        from execution.rd_legal_rag.claim_verification import extract_legal_claims
        answer = (
            "Según la Ley 41-08, los servidores tienen vacaciones. Hola. "
            "Esto es todo por ahora sin más.\nEl reglamento establece la escala aplicable."
        )
        assert extract_legal_claims(answer) == [
            "Según la Ley 41-08, los servidores tienen vacaciones.",
            "El reglamento establece la escala aplicable.",
        ]

    def test_duplicates_removed(self):
        from execution.rd_legal_rag.claim_verification import extract_legal_claims
        sentence = "El artículo 57 dispone vacaciones anuales."
        assert extract_legal_claims(f"{sentence} {sentence}") == [sentence]

    @pytest.mark.parametrize("claim, supported", [
        ("El artículo 57 dispone vacaciones remuneradas.", True),
        ("El artículo 90 dispone vacaciones remuneradas.", False),
        ("Conforme al reglamento, los servidores públicos tienen derecho a vacaciones.", True),
        ("Según la doctrina, el empleador puede despedir sin causa alguna.", False),
    ])
    def test_support_against_ley_text(self, claim, supported):
        from execution.rd_legal_rag.claim_verification import is_claim_supported
        assert is_claim_supported(claim, SAMPLE_LEY_41_08) is supported

    def test_law_reference_needs_literal_match(self):
        from execution.rd_legal_rag.claim_verification import is_claim_supported
        claim = "La Ley 41-08 establece el régimen de los servidores."
        assert is_claim_supported(claim, "Conforme a la ley 41-08, se regula la función pública.")
        assert not is_claim_supported(claim, "Conforme a la ley 16-92, se regula el trabajo.")

    def test_four_word_overlap_is_not_enough(self):
        from execution.rd_legal_rag.claim_verification import is_claim_supported
        chunk = "los servidores públicos tienen"
        assert not is_claim_supported("Según esto los servidores públicos tienen muchos beneficios.", chunk)

    def test_verify_answer_claims(self):
        from execution.rd_legal_rag.claim_verification import verify_answer_claims
        answer = (
            "El artículo 57 dispone vacaciones remuneradas. "
            "Según la doctrina, el empleador puede despedir sin causa alguna."
        )
        result = verify_answer_claims(answer, SAMPLE_LEY_41_08)
        assert result.verified == ["El artículo 57 dispone vacaciones remuneradas."]
        assert len(result.unverified) == 1
        assert result.caveat.startswith('Afirmaciones no verificadas en las fuentes cargadas: "Según la doctrina')

    def test_caveat_truncates_long_claims(self):
        from execution.rd_legal_rag.claim_verification import verify_answer_claims
        claim = "Según la doctrina " + "x" * 120 + "."
        result = verify_answer_claims(claim, "")
        assert "…" in result.caveat

    def test_no_claims(self):
        from execution.rd_legal_rag.claim_verification import verify_answer_claims
        result = verify_answer_claims("Hola, gracias.", SAMPLE_LEY_41_08)
        assert (result.verified, result.unverified, result.caveat) == ([], [], "")
