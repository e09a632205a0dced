"""
AI orchestration services package.

Routes caller requests across externally hosted language-model providers:
tier selection, provider fallback, quality judging, one-step escalation,
usage accounting and response caching. The caller-facing entry point is
``app.services.ai.engine.get_ai_engine()``.
"""
