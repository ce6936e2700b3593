"""Component factory for Conclave.

Creates and wires the run's infrastructure (config, context store, shared
cache, resilient executor, file ops, event log, cost ledger, LLM client)
and one actor per roster member, so the cycle controller and run session
receive fully-initialized dependencies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from src.agents.actor import Actor
from src.agents.human_actor import HumanActor
from src.agents.llm_actor import LLMActor
from src.agents.scripted_actor import ScriptedActor
from src.core.config import (
    AppConfig,
    ModelRegistry,
    PromptLoader,
    _default_config_dir,
    load_config,
    load_model_registry,
)
from src.core.exceptions import ConfigError
from src.core.models import ConsensusSignal
from src.llm.client import OpenRouterClient
from src.llm.token_tracker import CostLedger
from src.memory.context_store import ContextStore
from src.memory.shared_cache import SharedMemoryCache
from src.orchestrator.cycle import CycleController
from src.orchestrator.events import EventLog
from src.orchestrator.resilience import ResilientExecutor
from src.tools.file_ops import FileOps
from src.validation.path_validator import PathValidator

logger = logging.getLogger("conclave.factory")


@dataclass
class ComponentBundle:
    """Container for all initialized components of one run.

    The factory builds the bundle once; the run session and the CLI hand
    out references from it.
    """

    config: AppConfig
    model_registry: ModelRegistry
    store: ContextStore
    cache: SharedMemoryCache
    executor: ResilientExecutor
    file_ops: FileOps
    events: EventLog
    ledger: CostLedger
    controller: CycleController
    actors: dict[str, Actor] = field(default_factory=dict)
    llm_client: Optional[OpenRouterClient] = None


class ComponentFactory:
    """Factory for creating and wiring all Conclave components.

    Usage:
        bundle = ComponentFactory.create(simulate=True)
        session = RunSession.from_bundle(bundle)
    """

    @staticmethod
    def create(
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        api_key: Optional[str] = None,
        workspace_dir: Optional[Path] = None,
        simulate: bool = False,
        humans: Iterable[str] = (),
        config: Optional[AppConfig] = None,
    ) -> ComponentBundle:
        """Create and wire every component.

        Args:
            config_dir: Path to config/ directory. Default: project root/config.
            env: Environment name for config overlay (e.g., "test").
            api_key: OpenRouter API key. Falls back to OPENROUTER_API_KEY env var.
            workspace_dir: Root that actor file operations are confined to.
                Falls back to Path.cwd().
            simulate: Use scripted actors instead of LLM-backed ones.
            humans: Roster members driven from the terminal.
            config: Pre-built config (skips the YAML cascade).

        Raises:
            ConfigError: A human name is not on the roster, or an LLM actor
                has no model configured.
        """
        logger.info("Initializing components...")

        if config is None:
            config = load_config(config_dir=config_dir, env=env)
        model_registry = load_model_registry(config_dir=config_dir)
        roster = config.orchestrator.roster

        humans = set(humans)
        unknown = humans - set(roster)
        if unknown:
            raise ConfigError(f"Human actor(s) {sorted(unknown)} not on roster {roster}")

        # --- Persistence ---
        store = ContextStore(config.context)
        cache = SharedMemoryCache(config.cache)
        events = EventLog(jsonl_path=config.context.path_for(config.context.events_file))
        ledger = CostLedger(
            jsonl_path=config.context.path_for(config.context.cost_ledger_file),
            cost_per_1k_input=config.llm.cost_per_1k_input,
            cost_per_1k_output=config.llm.cost_per_1k_output,
        )

        # --- Execution ---
        executor = ResilientExecutor(retry=config.retry, breaker_config=config.circuit_breaker)
        file_ops = FileOps(
            root=(workspace_dir or Path.cwd()).resolve(),
            validator=PathValidator.from_config(config.paths),
        )

        # --- Actors ---
        llm_client: Optional[OpenRouterClient] = None
        prompts = PromptLoader((config_dir or _default_config_dir()) / "prompts")
        actors: dict[str, Actor] = {}
        for name in roster:
            if name in humans:
                actors[name] = HumanActor(name)
            elif simulate:
                actors[name] = ScriptedActor(name, default_signal=ConsensusSignal.AGREE)
            else:
                if llm_client is None:
                    llm_client = OpenRouterClient(config=config.llm, api_key=api_key)
                    logger.info("LLM client configured (base_url=%s)", config.llm.base_url)
                actors[name] = LLMActor(
                    name,
                    client=llm_client,
                    model=model_registry.get_model(name),
                    ledger=ledger,
                    prompts=prompts,
                    persona=config.orchestrator.personas.get(name, ""),
                )
        logger.info(
            "Roster: %s (%s)",
            ", ".join(roster),
            "simulated" if simulate else "llm",
        )

        controller = CycleController(
            actors=actors,
            config=config,
            file_ops=file_ops,
            executor=executor,
            cache=cache,
            store=store,
            events=events,
        )

        logger.info("All components initialized")
        return ComponentBundle(
            config=config,
            model_registry=model_registry,
            store=store,
            cache=cache,
            executor=executor,
            file_ops=file_ops,
            events=events,
            ledger=ledger,
            controller=controller,
            actors=actors,
            llm_client=llm_client,
        )

    @staticmethod
    def close(bundle: ComponentBundle) -> None:
        """Cleanly shut down all components."""
        if bundle.llm_client is not None:
            bundle.llm_client.close()
        logger.info("All components shut down")
