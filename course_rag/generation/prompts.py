"""
Prompt templates for course-materials answer generation.

Keeping templates in a separate module makes them easy to iterate on
without touching orchestration logic.
"""

# ---------------------------------------------------------------------------
# Main system prompt
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You are a helpful AI tutor assisting students with their coursework. \
Answer the student's question using ONLY the provided context from class materials.

RULES:
- Ground every claim in the provided context. Do NOT add facts from outside it.
- If the context doesn't contain enough information to answer the question, \
politely say so and suggest the student ask their teacher or check additional materials.
- Be clear, concise, and educational.
- When referencing information from the context, cite it by its source number, e.g. [1].

CONTEXT FROM CLASS MATERIALS:
{context}
"""

# ---------------------------------------------------------------------------
# Citation line template
# ---------------------------------------------------------------------------

CITATION_TEMPLATE = "[{index}] {file_name}{page} | similarity {similarity:.2f}"

# ---------------------------------------------------------------------------
# Fixed responses
# ---------------------------------------------------------------------------

NO_CONTEXT_RESPONSE = (
    "I don't have any relevant information in the class materials to answer "
    "your question. This could mean:\n\n"
    "1. The materials haven't been uploaded yet\n"
    "2. Your question is outside the scope of the current materials\n"
    "3. The materials are still being processed\n\n"
    "Please try asking your teacher directly, or wait for more materials to be uploaded."
)

RETRIEVAL_FAILURE_RESPONSE = (
    "I can't process this question right now. Please try again in a moment."
)
