"""
Agent Registry

Maps agent names ("claude", ...) to the per-agent pieces the processors
need: a conversation transformer and metrics post-processing options.
The registry is built once and passed to processors explicitly.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .transformers.base import ConversationTransformer

logger = logging.getLogger(__name__)

# Shell tools echo command output into their errors; never forward those.
DEFAULT_EXCLUDED_ERROR_TOOLS = ["Bash", "Execute", "Shell"]


@dataclass
class MetricsConfig:
    """
    Metrics post-processing options of one agent.

    Attributes:
        display_name: Human-readable agent name used in payloads
        exclude_errors_from_tools: Tools whose error messages are dropped
    """
    display_name: str = ""
    exclude_errors_from_tools: List[str] = field(
        default_factory=lambda: list(DEFAULT_EXCLUDED_ERROR_TOOLS)
    )


@dataclass
class AgentDefinition:
    """Everything the sync engine knows about one agent."""
    name: str
    display_name: str
    transformer: Optional[ConversationTransformer] = None
    metrics_config: Optional[MetricsConfig] = None


class AgentRegistry:
    """
    Registry of known agents.

    Example:
        registry = AgentRegistry()
        registry.register(AgentDefinition(
            name="claude",
            display_name="Claude Code",
            transformer=ClaudeConversationTransformer(),
        ))

        transformer = registry.get_transformer("claude")
    """

    def __init__(self) -> None:
        self._agents: Dict[str, AgentDefinition] = {}

    def register(self, agent: AgentDefinition) -> None:
        if agent.name in self._agents:
            logger.debug(f"[registry] Replacing agent definition: {agent.name}")
        self._agents[agent.name] = agent

    def get(self, name: str) -> Optional[AgentDefinition]:
        return self._agents.get(name)

    def list_agents(self) -> List[str]:
        return sorted(self._agents)

    def get_transformer(self, name: str) -> Optional[ConversationTransformer]:
        agent = self._agents.get(name)
        return agent.transformer if agent else None

    def get_metrics_config(self, name: str) -> MetricsConfig:
        """Metrics config of an agent; unknown agents get the defaults."""
        agent = self._agents.get(name)
        if agent is None:
            return MetricsConfig(display_name=name)
        config = agent.metrics_config or MetricsConfig()
        if not config.display_name:
            config = MetricsConfig(
                display_name=agent.display_name,
                exclude_errors_from_tools=list(config.exclude_errors_from_tools),
            )
        return config

    def get_display_name(self, name: str) -> str:
        agent = self._agents.get(name)
        return agent.display_name if agent else name


def create_default_registry() -> AgentRegistry:
    """Registry with every agent this package ships support for."""
    from .transformers.claude import ClaudeConversationTransformer

    registry = AgentRegistry()
    registry.register(AgentDefinition(
        name="claude",
        display_name="Claude Code",
        transformer=ClaudeConversationTransformer(display_name="Claude Code"),
        metrics_config=MetricsConfig(
            display_name="Claude Code",
            exclude_errors_from_tools=["Bash"],
        ),
    ))
    return registry
