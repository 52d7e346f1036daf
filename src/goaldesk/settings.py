from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    cors_origins: str = "*"

    openai_api_key: str | None = None
    openai_base_url: str | None = "https://openrouter.ai/api/v1"
    model: str = "gpt-4o-mini"
    temperature: float = 0.5
    max_completion_tokens: int = 2000
    request_timeout_seconds: float = 30.0

    # Per-agent overrides; empty model / negative temperature inherit the defaults.
    planner_model: str = ""
    sales_model: str = ""
    support_model: str = ""
    planner_temperature: float = -1.0
    sales_temperature: float = -1.0
    support_temperature: float = -1.0

    redis_url: str | None = None
    session_ttl_seconds: int = 86400  # 24 hours
    session_key_prefix: str = "atod:session:"
    memory_key_prefix: str = "atod:memory:"
    memory_max_chars: int = 2000

    workspace_id: str = "default-workspace"
    customer_id: str = "default-customer"
    channel_type: str = "chat"

    mcp_inventory_cmd: str | None = None
    mcp_knowledge_base_cmd: str | None = None

    planner_system_prompt: str = (
        "You are the planner of a customer-service assistant that tracks several "
        "customer goals at once.\n\n"
        "Given the user's message, a memory summary and the current session "
        "(goals, their status, slots and the goal stack), decide which goal this "
        "message is about.\n"
        " - Reuse an existing goal_id when the message continues that goal.\n"
        " - Use goal types in the 'sales.' namespace for buying and product "
        "questions (e.g. sales.recommend_item) and the 'support.' namespace for "
        "problems and troubleshooting (e.g. support.troubleshoot).\n"
        " - Support requests usually deserve a higher priority than sales.\n"
        " - Extract any slot values you can see into slots_patch.\n"
        " - List required but unknown slots in missing and, if you do, ask for "
        "the first one in next_question.\n\n"
        "Return only a JSON object with keys: goal_id (string, optional), "
        "goal_type (string), priority (positive integer), slots_patch (object), "
        "missing (array of strings), next_question (string)."
    )
    sales_system_prompt: str = (
        "You are a sales specialist. You help customers choose products that fit "
        "their needs and budget.\n\n"
        "The input is JSON with a 'mode' field:\n"
        " - act: you may call tools (inventory lookup, arithmetic) to gather "
        "facts before answering.\n"
        " - ask: the goal is missing information; ask for it politely.\n"
        " - finalize: answer the customer using the tool_results and act_message "
        "if present.\n\n"
        "When you answer (ask or finalize), return only a JSON object with keys: "
        "message (string, the reply to the customer) and state_updates (object "
        "with optional slots_patch, set_status, missing, next_question, "
        "memory_update, mark_done). Set set_status to 'done' once the customer's "
        "request is fully handled. If you list missing slots you must provide "
        "next_question."
    )
    support_system_prompt: str = (
        "You are a support specialist. You troubleshoot customer problems step "
        "by step and cite the knowledge base when you can.\n\n"
        "The input is JSON with a 'mode' field:\n"
        " - act: you may call tools (knowledge base search, arithmetic) to "
        "gather evidence before answering.\n"
        " - ask: the goal is missing information; ask for it politely.\n"
        " - finalize: answer the customer using the tool_results and act_message "
        "if present.\n\n"
        "When you answer (ask or finalize), return only a JSON object with keys: "
        "message (string, the reply to the customer) and state_updates (object "
        "with optional slots_patch, set_status, missing, next_question, "
        "memory_update, mark_done). Set set_status to 'done' once the problem is "
        "resolved. If you list missing slots you must provide next_question."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    return Settings()
