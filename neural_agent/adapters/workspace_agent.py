"""Workspace agent adapter: sandboxed tool loop over litellm with onboarding and context memory."""

import logging

from neural_agent import onboarding
from neural_agent.adapter import AgentAdapter
from neural_agent.cancellation import CancellationToken
from neural_agent.config import RuntimeConfig, load_runtime_config
from neural_agent.context_memory import ContextMemoryEngine, Interaction, normalize_app_context
from neural_agent.errors import ApiError, OnboardingIncompleteError, ToolError
from neural_agent.loop import ClientFactory, PreparedTurn, TurnRunner
from neural_agent.memory_files import append_memory_note, build_bootstrap_context, ensure_scaffold
from neural_agent.onboarding import ONBOARDING_APP_CONTEXT, OnboardingState
from neural_agent.providers import CredentialStore, LlmConfig, ModelCatalog, normalize_llm_config
from neural_agent.sandbox import WorkspacePolicy, resolve_workspace_root
from neural_agent.tools import OnboardingHandlers, ToolDispatcher, build_guidance_prompt, reachable_tools

logger = logging.getLogger("neural_agent.workspace_agent")

CONTEXT_MEMORY_MODES = ("compacted", "legacy")
MISSING_KEY_HINT = "Save a provider API key in Settings -> Provider Credentials."


def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def requested_llm_config(source) -> dict:
    """Non-empty providerId/modelId/toolTier strings from a body or query."""
    source = source if isinstance(source, dict) else {}
    return {key: _text(source.get(key)) for key in ("providerId", "modelId", "toolTier") if _text(source.get(key))}


class TurnOnboarding(OnboardingHandlers):
    """Onboarding tool actions bound to one stream request."""

    def __init__(self, adapter: "Adapter", session_id: str, requested: dict):
        self.adapter = adapter
        self.session_id = session_id
        self.requested = requested

    async def get_state(self, workspace_root: str) -> dict:
        state = onboarding.load_state(workspace_root)
        if not state.completed:
            state, _, _ = self.adapter.sync_readiness(workspace_root, self.session_id, self.requested)
        return state.to_dict()

    async def set_workspace_root(self, requested_root: str, current_root: str) -> dict:
        resolved = self.adapter.resolve_workspace(requested_root)
        onboarding.set_workspace_root(current_root, resolved)
        state = onboarding.set_checkpoint(resolved, "workspace_ready", True)
        if not state.completed:
            state, _, _ = self.adapter.sync_readiness(resolved, self.session_id, self.requested)
        onboarding.append_event(
            resolved, "workspace_root_updated",
            run_id=state.run_id, lifecycle=state.lifecycle, checkpoint="workspace_ready",
            details={"workspaceRoot": resolved},
        )
        return {"workspaceRoot": resolved, "state": state.to_dict()}

    async def save_provider_key(self, provider_id: str, api_key: str, workspace_root: str) -> dict:
        if provider_id not in self.adapter.models.list_providers():
            raise ToolError(f"Provider '{provider_id}' is not supported.")
        if not self.session_id:
            raise ToolError("save_provider_key requires a valid sessionId.")
        self.adapter.credentials.save(self.session_id, provider_id, api_key)
        current = onboarding.load_state(workspace_root)
        state, provider_ready, _ = self.adapter.sync_readiness(
            workspace_root, self.session_id,
            {"providerId": provider_id, "modelId": current.model_id, "toolTier": current.tool_tier},
        )
        onboarding.append_event(
            workspace_root, "provider_key_saved",
            run_id=state.run_id, lifecycle=state.lifecycle, checkpoint="provider_ready",
            details={"providerId": provider_id, "providerReady": provider_ready},
        )
        return {"providerId": provider_id, "state": state.to_dict()}

    async def set_model_preferences(self, provider_id: str, model_id: str, tool_tier: str, workspace_root: str) -> dict:
        current = onboarding.load_state(workspace_root)
        try:
            llm, _ = normalize_llm_config(
                {"providerId": provider_id, "modelId": model_id, "toolTier": tool_tier or current.tool_tier},
                self.adapter.models,
            )
        except ApiError as e:
            raise ToolError(e.message) from e
        state, provider_ready, model_ready = self.adapter.sync_readiness(workspace_root, self.session_id, llm.to_dict())
        onboarding.append_event(
            workspace_root, "model_preferences_saved",
            run_id=state.run_id, lifecycle=state.lifecycle, checkpoint="model_ready",
            details={**llm.to_dict(), "providerReady": provider_ready, "modelReady": model_ready},
        )
        return {"llmConfig": llm.to_dict(), "state": state.to_dict()}

    async def complete(self, summary: str, workspace_root: str) -> dict:
        if summary:
            append_memory_note(workspace_root, f"Onboarding completion summary:\n{summary}", ["onboarding", "completion"])
        state = onboarding.complete(workspace_root)
        onboarding.append_event(
            workspace_root, "onboarding_completed",
            run_id=state.run_id, lifecycle=state.lifecycle, checkpoint="completed",
            details={"via": "tool", "summaryProvided": bool(summary)},
        )
        return {"state": state.to_dict()}

    async def on_memory_file_written(self, workspace_root: str, path: str, mode: str) -> None:
        state = onboarding.load_state(workspace_root)
        if state.checkpoints.get("memory_seeded"):
            return
        state = onboarding.set_checkpoint(workspace_root, "memory_seeded", True)
        onboarding.append_event(
            workspace_root, "memory_seeded",
            run_id=state.run_id, lifecycle=state.lifecycle, checkpoint="memory_seeded",
            details={"path": path or "", "mode": mode or ""},
        )


class Adapter(AgentAdapter):
    """Sandboxed workspace agent: one tool loop per request, lanes and keys kept in memory."""

    def __init__(
        self,
        config: RuntimeConfig | None = None,
        *,
        models: ModelCatalog | None = None,
        credentials: CredentialStore | None = None,
        client_factory: ClientFactory | None = None,
    ):
        self.config = config
        self.models = models
        self.credentials = credentials or CredentialStore()
        self.client_factory = client_factory
        self.policy: WorkspacePolicy | None = None
        self.memory: ContextMemoryEngine | None = None
        self.runner: TurnRunner | None = None

    async def initialize(self, config_path: str | None = None) -> None:
        if self.config is None:
            self.config = load_runtime_config(config_path)
        config = self.config
        self.policy = WorkspacePolicy.create(config.default_workspace_root, config.allowed_roots)
        if self.models is None:
            self.models = ModelCatalog(config.default_provider, config.default_model)
        self.memory = ContextMemoryEngine(config.compaction)
        self.runner = TurnRunner(config, self.memory, ToolDispatcher(), self.client_factory)
        logger.info(
            "Workspace agent initialized (default workspace %s, provider %s)",
            config.default_workspace_root, config.default_provider,
        )

    async def shutdown(self) -> None:
        if self.memory is not None:
            await self.memory.aclose()
        logger.info("Workspace agent shut down")

    # --- Shared helpers ---

    def resolve_workspace(self, requested_root: str | None) -> str:
        """Resolve against policy, scaffold memory files and return the canonical root."""
        root = resolve_workspace_root(requested_root, self.policy).canonical_root
        ensure_scaffold(root)
        return root

    def _onboarding_llm_config(self, requested: dict, state: OnboardingState) -> LlmConfig:
        fallback = {
            "providerId": state.provider_id or self.config.default_provider,
            "modelId": state.model_id or self.config.default_model,
            "toolTier": state.tool_tier,
        }
        try:
            llm, _ = normalize_llm_config({**fallback, **requested}, self.models)
        except ApiError:
            return LlmConfig(fallback["providerId"], fallback["modelId"], fallback["toolTier"])
        return llm

    def sync_readiness(
        self, workspace_root: str, session_id: str, requested: dict | None = None
    ) -> tuple[OnboardingState, bool, bool]:
        """Recompute provider_ready and model_ready from credentials and the catalog."""
        state = onboarding.load_state(workspace_root)
        llm = self._onboarding_llm_config(requested or {}, state)
        provider_ready = bool(self.credentials.resolve_api_key(session_id, llm.provider_id))
        model_ready = self.models.get_model(llm.provider_id, llm.model_id) is not None
        state = onboarding.set_provider_configuration(
            workspace_root,
            provider_configured=provider_ready,
            provider_id=llm.provider_id,
            model_id=llm.model_id,
            tool_tier=llm.tool_tier,
            model_ready=model_ready,
        )
        return state, provider_ready, model_ready

    # --- Turns ---

    async def prepare_turn(self, body: dict) -> PreparedTurn:
        body = body if isinstance(body, dict) else {}
        session_id = _text(body.get("sessionId"))
        raw_llm = body.get("llmConfig")
        if not isinstance(raw_llm, dict):
            raw_llm = {"providerId": self.config.default_provider, "modelId": self.config.default_model}
        llm, model = normalize_llm_config(raw_llm, self.models)

        api_key = self.credentials.resolve_api_key(session_id, model.provider)
        if not api_key:
            raise ApiError(
                400, "MISSING_API_KEY", f"No API key configured for provider '{model.provider}'.",
                {"providerId": model.provider, "hint": MISSING_KEY_HINT},
            )

        style = body.get("styleConfig") if isinstance(body.get("styleConfig"), dict) else {}
        workspace_root = self.resolve_workspace(_text(style.get("workspaceRoot")) or _text(body.get("workspaceRoot")))

        state = onboarding.start_run(workspace_root)
        if not state.completed:
            state, _, _ = self.sync_readiness(workspace_root, session_id, requested_llm_config(raw_llm))
        onboarding_mode = not state.completed

        raw_interaction = body.get("currentInteraction")
        app_context = normalize_app_context(
            body.get("appContext") or (raw_interaction.get("appContext") if isinstance(raw_interaction, dict) else None)
        )
        if onboarding_mode:
            app_context = ONBOARDING_APP_CONTEXT
        user_message = body.get("userMessage") if isinstance(body.get("userMessage"), str) else ""
        if isinstance(raw_interaction, dict):
            interaction = Interaction.from_payload(raw_interaction, app_context)
        else:
            interaction = Interaction.fallback(app_context, user_message)

        tools = reachable_tools(llm.tool_tier, onboarding_required=onboarding_mode)
        segments = [
            _text(body.get("systemPrompt")),
            onboarding.build_policy_prompt(state),
            build_bootstrap_context(workspace_root, app_context),
        ]
        base_prompt = "\n\n".join(part for part in segments if part)
        system_prompt = "\n\n".join(part for part in (base_prompt, build_guidance_prompt(tools)) if part)

        mode = body.get("contextMemoryMode")
        seed = body.get("currentRenderedScreen")
        return PreparedTurn(
            session_id=session_id,
            llm=llm,
            model=model,
            api_key=api_key,
            workspace_root=workspace_root,
            app_context=app_context,
            interaction=interaction,
            user_message=user_message,
            system_prompt=system_prompt,
            base_prompt=base_prompt,
            tools=tools,
            memory_mode=mode if mode in CONTEXT_MEMORY_MODES else "compacted",
            onboarding_mode=onboarding_mode,
            onboarding_state=state,
            onboarding=TurnOnboarding(self, session_id, requested_llm_config(raw_llm)),
            seed_screen=seed if isinstance(seed, dict) else None,
            google_search_api_key=_text(body.get("googleSearchApiKey")) or None,
            google_search_cx=_text(body.get("googleSearchCx")) or None,
        )

    def stream_turn(self, prepared: PreparedTurn, cancel: CancellationToken):
        return self.runner.run(prepared, cancel)

    # --- Catalog and credentials ---

    async def catalog(self) -> dict:
        return self.models.to_payload()

    def _check_provider(self, provider_id: str) -> str:
        providers = self.models.list_providers()
        if provider_id not in providers:
            raise ApiError(
                400, "INVALID_PROVIDER", f"Provider '{provider_id}' is not supported.",
                {"requestedProvider": provider_id, "availableProviders": providers},
            )
        return provider_id

    async def set_credential(self, session_id: str, provider_id: str, api_key: str) -> dict:
        if not session_id or not provider_id or not api_key:
            raise ApiError(
                400, "INVALID_CREDENTIAL_REQUEST", "sessionId, providerId, and apiKey are required.",
                {"required": ["sessionId", "providerId", "apiKey"]},
            )
        provider_id = self._check_provider(provider_id.strip())
        self.credentials.save(session_id, provider_id, api_key)
        return {"ok": True, "providerId": provider_id}

    async def remove_credential(self, session_id: str, provider_id: str) -> dict:
        if not session_id or not provider_id:
            raise ApiError(
                400, "INVALID_CREDENTIAL_REQUEST", "sessionId and providerId are required.",
                {"required": ["sessionId", "providerId"]},
            )
        provider_id = self._check_provider(provider_id.strip())
        self.credentials.remove(session_id, provider_id)
        return {"ok": True, "providerId": provider_id}

    # --- Onboarding routes ---

    async def onboarding_state(self, query: dict) -> dict:
        workspace_root = self.resolve_workspace(_text(query.get("workspaceRoot")))
        state = onboarding.start_run(workspace_root)
        if not state.completed:
            state, _, _ = self.sync_readiness(workspace_root, _text(query.get("sessionId")), requested_llm_config(query))
        return {"ok": True, "workspaceRoot": workspace_root, "state": state.to_dict()}

    async def reopen_onboarding(self, body: dict) -> dict:
        workspace_root = self.resolve_workspace(_text(body.get("workspaceRoot")))
        state = onboarding.reopen(workspace_root)
        onboarding.append_event(
            workspace_root, "onboarding_reopened",
            run_id=state.run_id, lifecycle=state.lifecycle, details={"source": "api"},
        )
        return {"ok": True, "workspaceRoot": workspace_root, "state": state.to_dict()}

    async def complete_onboarding(self, body: dict) -> dict:
        workspace_root = self.resolve_workspace(_text(body.get("workspaceRoot")))
        summary = _text(body.get("summary"))
        try:
            state = onboarding.complete(workspace_root)
        except OnboardingIncompleteError as e:
            raise ApiError(400, e.code, e.message, e.details) from e
        if summary:
            append_memory_note(workspace_root, f"Onboarding completion summary:\n{summary}", ["onboarding", "completion"])
        onboarding.append_event(
            workspace_root, "onboarding_completed",
            run_id=state.run_id, lifecycle=state.lifecycle, checkpoint="completed",
            details={"via": "api", "summaryProvided": bool(summary)},
        )
        return {"ok": True, "workspaceRoot": workspace_root, "state": state.to_dict()}

    # --- Diagnostics ---

    async def context_memory_snapshot(self, session_id: str = "", app_context: str = "") -> list[dict]:
        if self.config.production:
            raise ApiError(404, "NOT_FOUND", "Context memory diagnostics are unavailable in production.")
        context = normalize_app_context(app_context) if app_context else ""
        return self.memory.snapshot(session_id, context)

    async def list_tools(self) -> list[dict]:
        return [spec.to_dict() for spec in reachable_tools("standard")]

    async def health(self) -> dict:
        config = self.config
        return {
            "ok": True,
            "mode": "neural-agent-workspace-runtime",
            "defaultModel": config.default_model,
            "provider": config.default_provider,
            "toolBudgets": {"maxTurns": None, "maxMs": None, "commandTimeoutSec": config.tool_cmd_timeout_sec},
            "workspacePolicy": {
                "defaultWorkspaceRoot": config.default_workspace_root,
                "allowedRoots": config.allowed_roots,
            },
            "availableProviders": self.models.list_providers(),
            "hasDefaultProviderApiKey": bool(self.credentials.resolve_api_key(None, config.default_provider)),
        }

    def public_route_prefixes(self) -> list[str]:
        return ["/health", "/api/health"]
