"""
Spanish Pattern Definitions and Prompt Templates

All guardrail regexes, fixed user-facing messages and LLM prompt templates
for the Dominican legal assistant. Modules import from here instead of
defining patterns inline.
"""

import re

# =============================================================================
# Guardrail Patterns
# =============================================================================

ILLEGAL_REQUEST_PATTERNS = [
    re.compile(r"\bfalsificar\b"),
    re.compile(r"\bfalsear\b"),
    re.compile(r"\b(documento|certificado|firma)\s*(falso|falsificado)"),
    re.compile(r"\bevadir\s*(impuestos|tributos|hacienda|la ley)", re.IGNORECASE),
    re.compile(r"\bdefraudar\b"),
    re.compile(r"\bfraude\s*(tributario|fiscal)", re.IGNORECASE),
    re.compile(r"\binstrucciones?\s*para\s*(falsificar|evadir|defraudar)", re.IGNORECASE),
    re.compile(r"\bc[oó]mo\s*(falsificar|falsear|evadir\s*impuestos)", re.IGNORECASE),
    re.compile(r"\bpasos?\s*para\s*(falsificar|evadir|defraudar)", re.IGNORECASE),
    re.compile(r"\bdelinquir\b"),
    re.compile(r"\bcometer\s*(un\s*)?delito\b"),
    re.compile(r"\bhuir\s*(de\s*)?(la\s*)?justicia\b"),
    re.compile(r"\bocultar\s*(bienes|dinero)\s*(a\s*)?(hacienda|autoridades)", re.IGNORECASE),
    re.compile(r"\brepresentaci[oó]n\s*legal\s*personalizada\b"),
    re.compile(r"\bte\s*garantizo\b|\bgarantizo\s*que\b|\bresultado\s*garantizado\b"),
]

PII_PATTERNS = {
    "email": re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE),
    "phone": re.compile(r"\b(\+?\d{1,3}[\s-]?)?(\(?\d{2,4}\)?[\s-]?)?\d{3,4}[\s-]?\d{4}\b"),
    "cedula": re.compile(r"\b\d{3}-\d{7}-\d\b|\b\d{11}\b"),
    "address": re.compile(
        r"\b(calle|av\.?|avenida|sector|residencial|apto|apartamento|edificio|km|kil[oó]metro"
        r"|número|dirección)\b|(?<!ley )(?<!decreto )\bno\.\s*\d+(?!\d*-\d)",
        re.IGNORECASE,
    ),
    "exact_date": re.compile(r"\b\d{1,2}[/-]\d{1,2}[/-]\d{2,4}\b"),
}

PERSONAL_ADVICE_TRIGGERS = [
    "en mi caso",
    "para mi caso",
    "qué hago",
    "que hago",
    "qué debo hacer",
    "que debo hacer",
    "me conviene",
    "qué me recomiendas",
    "que me recomiendas",
    "mi situación",
    "mi situacion",
    "ayúdame con mi caso",
    "ayudame con mi caso",
]

BROAD_TOPIC_PATTERN = re.compile(
    r"^(divorcio|herencia|renuncia|despido|contrato|demanda|pensión|pension|alquiler"
    r"|arrendamiento|colaborador)\b",
    re.IGNORECASE,
)

NO_SOURCES_PHRASE = re.compile(r"no\s+encontr[eé]\s+fuentes", re.IGNORECASE)
NO_SOURCES_SENTENCE = re.compile(r"\s*[.\s]*(no\s+encontr[eé]\s+fuentes[^.]*)[.]?\s*", re.IGNORECASE)

# =============================================================================
# Mode Aliases
# =============================================================================

MAX_RELIABILITY_ALIASES = frozenset({
    "max-reliability",
    "maxima-confiabilidad",
    "maxima",
    "max",
    "reliability",
    "confiabilidad",
    "maximum-reliability",
})

# =============================================================================
# Fixed Messages
# =============================================================================

MESSAGES = {
    "reject": (
        "Esta herramienta solo ofrece información general y educativa. Por favor, reformule la "
        "consulta de forma hipotética o consulte a un abogado colegiado."
    ),
    "refusal": (
        "Esta herramienta no puede ayudar con solicitudes que impliquen actos ilegales, "
        "falsificación, evasión fiscal ilícita ni instrucciones para delinquir. Consulte a un "
        "abogado colegiado para asuntos legales."
    ),
    "disclaimer_prefix": "Nota: información general, no asesoría legal profesional.\n\n",
    "max_reliability_disclaimer": (
        "**Modo Máxima Confiabilidad:** respuesta basada exclusivamente en normativa vigente "
        "verificada en el corpus. Información general; no constituye asesoría legal."
    ),
    "deferral": (
        "Estoy verificando fuentes oficiales para responder con precisión. Intente de nuevo en "
        "unos minutos; mientras tanto, puede usar el modo Normal para orientación general."
    ),
    "insufficient_answer": (
        "No se pudo generar un criterio específico con el contexto recuperado. Consulte las "
        "fuentes verificadas más abajo; si lo desea, reformule su consulta con más detalle o use "
        "el modo Normal para orientación general."
    ),
    "degraded_answer": (
        "No se pudo generar una respuesta verificada en este momento (los servicios de análisis "
        "no respondieron). Intente de nuevo en unos minutos."
    ),
    "synthesis_failed": (
        "No se pudo generar respuesta (Claude y alternativas fallaron). "
        "Datos de {count} agentes recibidos."
    ),
    "partial_agents_note": (
        "Nota informativa: Se usaron datos de {count} de {total} agentes (algunos servicios no "
        "respondieron temporalmente). La respuesta sigue siendo válida con la información disponible."
    ),
    "claude_fallback_note": (
        "Respuesta generada sin Claude (fallo temporal). Datos de {count} agentes disponibles."
    ),
    "missing_orchestrator_key": "Falta configuración del orquestador (ANTHROPIC_API_KEY).",
    "internal_error": "Ocurrió un error interno al procesar la consulta. Intente de nuevo más tarde.",
    "rate_limited": "Demasiadas solicitudes. Intente más tarde.",
    "invalid_request": "La solicitud no tiene el formato esperado. Revise el mensaje y el historial enviados.",
}

CLARIFY_FALLBACK_QUESTIONS = [
    "¿Se trata de un contrato verbal o escrito?",
    "¿Existe un plazo definido o es por tiempo indefinido?",
    "¿Había subordinación (horario, supervisión) o autonomía en la prestación del servicio?",
]

RELIABILITY_FALLBACK_QUESTIONS = [
    "¿La exigencia está por escrito (circular/correo) o solo verbal?",
    "¿Te han indicado sanciones si no cumples?",
    "¿Aplica en días libres, vacaciones o ambos?",
    "¿Tienes documentación (contrato, comunicaciones) que pueda ser relevante?",
]

ADVERTENCIA_FINAL = (
    "Este análisis es orientativo y se basa únicamente en la información proporcionada de forma "
    "genérica. No constituye asesoramiento legal vinculante, no crea relación abogado-cliente y no "
    "sustituye la consulta con un abogado colegiado. Se recomienda encarecidamente acudir a un "
    "profesional habilitado para evaluar su caso concreto."
)

# =============================================================================
# LLM Prompt Templates
# =============================================================================

DISCLAIMER_HARD_RULES = """Eres un asistente informativo sobre derecho de República Dominicana. Tu rol es ÚNICAMENTE educativo e informativo.

Reglas estrictas:
- No des asesoría legal personalizada, no "diagnostiques" casos reales, no pidas ni uses datos personales identificables.
- Si la consulta es personal ("¿qué debo hacer?", "en mi caso"), responde pidiendo reformular de forma hipotética/general.
- Siempre escribe en español, con precisión y prudencia.
"""

LLM_PROMPTS = {
    "busqueda": (
        "Busca y cita textualmente leyes, reglamentos, Constitución RD, jurisprudencia SCJ/TC con "
        "números y fechas, doctrina y actualizaciones 2026 relevantes a {tema}. Prioriza fuentes "
        "oficiales: scj.gob.do, tc.gob.do, gacetaoficial.gob.do, mt.gob.do, map.gob.do. Si no puedes "
        "verificar una cita textual, indícalo explícitamente y no inventes números ni fechas."
    ),

    "agent_xai": "Eres un agente de búsqueda jurídica. Responde con citas y fuentes oficiales cuando sea posible.",
    "agent_openai": "Eres un agente de búsqueda jurídica. Responde con citas verificables; no inventes.",
    "agent_groq": "Eres un agente de búsqueda jurídica. Cita fuentes oficiales si puedes; no inventes.",

    "clarifier_system": DISCLAIMER_HARD_RULES + """
Eres un clarificador. Tu salida DEBE ser JSON válido, sin texto adicional.
Devuelve: {"questions": ["...", "...", "..."]} con máximo 3 preguntas genéricas.
Prohibido pedir nombres, cédulas, direcciones, teléfonos, correos o fechas exactas reales.""",

    "synthesis_system": DISCLAIMER_HARD_RULES + f"""
Eres el juez/sintetizador final. Debes producir una respuesta educativa y general sobre derecho dominicano.
PROHIBIDO: asesoría personalizada, instrucciones para evadir la ley, pedir datos personales.

Tu salida debe tener EXACTAMENTE estos 5 bloques numerados y en este orden:
1. Resumen breve de la consulta
2. Normativa aplicable (citas textuales de artículos, leyes, reglamentos, Constitución, jurisprudencia con números y fechas)
3. Análisis jurídico detallado (hechos genéricos → calificación → consecuencias → riesgos)
4. Recomendaciones prácticas y pasos concretos (siempre generales, nunca personalizados)
5. Advertencia final obligatoria (en negrita y destacada):
**"{ADVERTENCIA_FINAL}"**

Si alguna cita no puede verificarse con certeza, dilo y sugiere verificar en fuentes oficiales. No inventes artículos, números de sentencia ni fechas.""",

    "fallback_synthesis_system": DISCLAIMER_HARD_RULES + f"""
Sintetiza en español la siguiente información en una respuesta educativa breve con: 1) Resumen, 2) Normativa aplicable, 3) Análisis jurídico, 4) Recomendaciones prácticas, 5) Advertencia final: "{ADVERTENCIA_FINAL}".""",

    "researcher_system": DISCLAIMER_HARD_RULES + """
Modo Máxima Confiabilidad. Responde ÚNICAMENTE con base en las fuentes vigentes proporcionadas en el contexto (bloques [Fuente #i | instrumento | versión | chunk_index | url]).
Tu salida DEBE ser ÚNICAMENTE un objeto JSON válido, sin texto antes ni después.

Schema exacto:
{
  "decision": "APPROVE" | "NEED_MORE_INFO" | "NO_EVIDENCE" | "UNVERIFIED_CITATION",
  "confidence": número entre 0 y 1,
  "answer": "respuesta para el usuario",
  "missing_info_questions": ["pregunta1", ...],
  "caveats": ["salvedad1", ...],
  "next_steps": ["paso1", ...],
  "citations": [{"instrument": "...", "type": "...", "number": "...", "published_date": "...", "status": "...", "source_url": "...", "chunk_index": 0}]
}

Reglas obligatorias:
- Cita solo artículos que aparezcan textualmente en las fuentes; no inventes números de artículos, leyes ni fechas.
- Cada cita debe usar exactamente el source_url y chunk_index de un bloque [Fuente #i].
- Si las fuentes no cubren la consulta: decision = NO_EVIDENCE.
- Si la respuesta depende de hechos concretos que faltan: decision = NEED_MORE_INFO y llena missing_info_questions (máximo 4).
- confidence debe reflejar cuánto respaldan las fuentes la respuesta.""",
}


def busqueda_prompt(tema: str) -> str:
    return LLM_PROMPTS["busqueda"].format(tema=tema)
