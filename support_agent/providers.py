"""
LLM Providers
=============
Builds the LangChain chat model and configures DSPy from environment variables.

Provider auto-detection priority: Groq → Azure OpenAI → OpenAI
Override with LLM_PROVIDER=groq|azure|openai to force a specific provider.

The chat model writes general-support replies; DSPy runs the intent
classifier. Both resolve the model through model_name() so one set of env
vars configures both and they never drift apart.

    provider  model env var             default
    groq      GROQ_MODEL                llama-3.3-70b-versatile
    azure     AZURE_OPENAI_DEPLOYMENT   gpt-4o
    openai    OPENAI_MODEL              gpt-4o-mini
"""
import logging
import os

import dspy

logger = logging.getLogger(__name__)

_MODEL_DEFAULTS = {
    "groq":   ("GROQ_MODEL", "llama-3.3-70b-versatile"),
    "azure":  ("AZURE_OPENAI_DEPLOYMENT", "gpt-4o"),
    "openai": ("OPENAI_MODEL", "gpt-4o-mini"),
}


def detect_provider() -> str:
    """
    Return which LLM provider to use.

    Checks LLM_PROVIDER first (explicit override), then falls back to
    whichever API key is present in the environment.
    """
    forced = os.getenv("LLM_PROVIDER", "").lower()
    if forced in _MODEL_DEFAULTS:
        return forced
    if os.getenv("GROQ_API_KEY"):
        return "groq"
    if os.getenv("AZURE_OPENAI_API_KEY"):
        return "azure"
    return "openai"


def model_name(provider: str | None = None) -> str:
    env_var, default = _MODEL_DEFAULTS[provider or detect_provider()]
    return os.getenv(env_var, default)


def _azure_settings() -> dict:
    return {
        "endpoint": os.getenv("AZURE_OPENAI_ENDPOINT"),
        "api_version": os.getenv("AZURE_OPENAI_API_VERSION", "2024-12-01-preview"),
        "api_key": os.getenv("AZURE_OPENAI_API_KEY"),
    }


def build_llm():
    """
    Return a LangChain chat model for the detected provider.

    Azure omits temperature (o-series deployments reject it).
    """
    provider = detect_provider()
    model = model_name(provider)
    logger.info("[providers] Chat model: %s/%s", provider, model)

    if provider == "groq":
        from langchain_groq import ChatGroq
        return ChatGroq(model=model, api_key=os.getenv("GROQ_API_KEY"), temperature=0)

    if provider == "azure":
        from langchain_openai import AzureChatOpenAI
        azure = _azure_settings()
        return AzureChatOpenAI(
            azure_endpoint=azure["endpoint"],
            azure_deployment=model,
            api_version=azure["api_version"],
            api_key=azure["api_key"],
        )

    from langchain_openai import ChatOpenAI
    return ChatOpenAI(model=model, api_key=os.getenv("OPENAI_API_KEY"), temperature=0)


def configure_dspy() -> dspy.LM:
    """
    Point DSPy at the same provider and model as the chat model.

    Called once from AgentSession.start(), never at import time.
    """
    provider = detect_provider()
    model = model_name(provider)

    if provider == "azure":
        azure = _azure_settings()
        lm = dspy.LM(
            f"azure/{model}",
            api_base=azure["endpoint"],
            api_key=azure["api_key"],
            api_version=azure["api_version"],
        )
    else:
        key_var = "GROQ_API_KEY" if provider == "groq" else "OPENAI_API_KEY"
        lm = dspy.LM(f"{provider}/{model}", api_key=os.getenv(key_var))

    dspy.configure(lm=lm)
    logger.info("[providers] DSPy configured: %s/%s", provider, model)
    return lm
