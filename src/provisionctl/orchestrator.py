"""Save, verify and status across one or many target contexts.

``verify`` resolves the services bound to each target, runs every declared
configuration artifact through the generation pipeline, writes the results and
finally asks each involved service to reload. Targets are independent: they
may run on a bounded worker pool and a failure in one never stops the others.
Within a target, artifacts are processed strictly in declaration order.
"""
from __future__ import annotations

import concurrent.futures
import subprocess
import threading
import time
import traceback
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .artifacts import (
    ArtifactError,
    ArtifactTarget,
    ArtifactWriter,
    ConfigurationArtifact,
    RenderError,
    WriteError,
)
from .config import AppConfig
from .contexts import (
    Context,
    ContextStore,
    ContextStoreError,
    VerificationRecord,
    VerifyState,
)
from .hooks import ExtensionHookBus
from .logging import StructuredLogger
from .services import Service, ServiceError, ServiceRegistry, UnknownService, run_post_action
from .services.base import CommandRunner
from .templates import TemplateEngine


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


@dataclass(slots=True)
class ArtifactOutcome:
    """Result of generating and writing one artifact."""

    name: str
    description: str
    path: Path | None
    mode: int
    group: str
    changed: bool = False
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "description": self.description,
            "path": str(self.path) if self.path is not None else None,
            "mode": f"{self.mode:04o}",
            "group": self.group,
            "changed": self.changed,
            "error": self.error,
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class TargetOutcome:
    """Verification outcome for a single target context."""

    name: str
    state: VerifyState = VerifyState.UNVERIFIED
    artifacts: list[ArtifactOutcome] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    post_actions: list[str] = field(default_factory=list)
    failure_kind: str | None = None
    duration_ms: int | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` when the target verified successfully."""
        return self.state is VerifyState.VERIFIED

    def fail(self, exc: BaseException) -> None:
        """Record *exc* as a failure of this target."""
        if self.failure_kind is None:
            self.failure_kind = type(exc).__name__
        self.errors.append(_describe(exc))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_kind": self.failure_kind,
            "artifacts": [artifact.to_dict() for artifact in self.artifacts],
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "post_actions": list(self.post_actions),
            "duration_ms": self.duration_ms,
        }


@dataclass(slots=True, frozen=True)
class VerifyReport:
    """Aggregated outcome of a verify run."""

    outcomes: Mapping[str, TargetOutcome]
    metadata: Mapping[str, Any] | None = None

    @property
    def ok(self) -> bool:
        """``True`` only when every target verified."""
        return all(outcome.ok for outcome in self.outcomes.values())

    def failures(self) -> list[TargetOutcome]:
        """Return the outcomes of targets that did not verify."""
        return [outcome for outcome in self.outcomes.values() if not outcome.ok]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ok": self.ok,
            "targets": {name: outcome.to_dict() for name, outcome in self.outcomes.items()},
            "metadata": dict(self.metadata or {}),
        }


@dataclass(slots=True)
class TargetStatus:
    """Read-only view of a target's declared configuration and last outcome."""

    name: str
    type: str
    uri: str
    saved: bool
    verification: VerificationRecord | None
    services: list[str] = field(default_factory=list)
    artifacts: list[ArtifactOutcome] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def state(self) -> VerifyState:
        """Last recorded verification state."""
        if self.verification is None:
            return VerifyState.UNVERIFIED
        return self.verification.state

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "type": self.type,
            "uri": self.uri,
            "saved": self.saved,
            "state": self.state.value,
            "verification": self.verification.to_dict() if self.verification else None,
            "services": list(self.services),
            "artifacts": [artifact.to_dict() for artifact in self.artifacts],
            "errors": list(self.errors),
        }


@dataclass(slots=True)
class _PlannedArtifact:
    service: Service
    binding: Mapping[str, Any]
    artifact: ConfigurationArtifact


class VerifyOrchestrator:
    """Drive save/verify/status for target contexts."""

    def __init__(
        self,
        store: ContextStore,
        registry: ServiceRegistry,
        hooks: ExtensionHookBus,
        templates: TemplateEngine,
        config: AppConfig,
        *,
        logger: StructuredLogger | None = None,
        writer: ArtifactWriter | None = None,
        command_runner: CommandRunner = subprocess.run,
    ) -> None:
        """Wire the collaborators used for every target."""
        self.store = store
        self.registry = registry
        self.hooks = hooks
        self.templates = templates
        self.config = config
        self.logger = logger
        self.writer = writer or ArtifactWriter()
        self._command_runner = command_runner
        self._cancel = threading.Event()

    # ------------------------------------------------------------------
    def save(self, context: Context) -> Path:
        """Persist the context definition; artifacts are not touched."""
        return self.store.save(context)

    def cancel(self) -> None:
        """Stop dispatching targets that have not started yet."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once :meth:`cancel` has been called."""
        return self._cancel.is_set()

    def resolve_targets(self, targets: Sequence[Context | str]) -> list[Context]:
        """Load named targets; discovery errors propagate to the caller."""
        return [
            target if isinstance(target, Context) else self.store.load(target)
            for target in targets
        ]

    # ------------------------------------------------------------------
    def verify(
        self,
        targets: Sequence[Context | str],
        *,
        run_post_actions: bool | None = None,
    ) -> VerifyReport:
        """Verify every target and aggregate the outcomes."""
        contexts = self.resolve_targets(targets)
        post_actions = (
            self.config.verify.run_post_actions if run_post_actions is None else run_post_actions
        )
        start = time.perf_counter()
        outcomes: dict[str, TargetOutcome] = {
            context.name: TargetOutcome(name=context.name) for context in contexts
        }

        max_workers = max(1, self.config.verify.max_concurrency)
        if max_workers == 1 or len(contexts) <= 1:
            for context in contexts:
                outcomes[context.name] = self._verify_target(context, post_actions)
        else:
            with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
                future_to_name: dict[concurrent.futures.Future[TargetOutcome], str] = {}
                for context in contexts:
                    future = executor.submit(self._verify_target, context, post_actions)
                    future_to_name[future] = context.name
                for future in concurrent.futures.as_completed(future_to_name):
                    outcomes[future_to_name[future]] = future.result()

        return VerifyReport(
            outcomes=outcomes,
            metadata={
                "duration_ms": _duration_ms(start),
                "target_count": len(contexts),
                "concurrency": max_workers,
                "cancelled": self.cancelled,
            },
        )

    def status(self, targets: Sequence[Context | str]) -> list[TargetStatus]:
        """Report declared configuration and last outcome without writing."""
        statuses: list[TargetStatus] = []
        for context in self.resolve_targets(targets):
            status = TargetStatus(
                name=context.name,
                type=context.type.value,
                uri=context.uri,
                saved=context.saved,
                verification=context.verification,
            )
            try:
                planned = self._plan(context)
            except (ContextStoreError, ServiceError) as exc:
                status.errors.append(_describe(exc))
                statuses.append(status)
                continue
            status.services = list(dict.fromkeys(item.service.key for item in planned))
            for item in planned:
                status.artifacts.append(self._describe_artifact(item.artifact, status.errors))
            statuses.append(status)
        return statuses

    # ------------------------------------------------------------------
    def _plan(self, context: Context) -> list[_PlannedArtifact]:
        chain = self.store.resolve_chain(context)
        planned: list[_PlannedArtifact] = []
        for service_type, binding in self.store.service_bindings(chain).items():
            subtype = binding.get("type")
            if not subtype:
                raise UnknownService(
                    f"Service '{service_type}' on {context.identifier} does not name a type."
                )
            service = self.registry.get(service_type, str(subtype))
            target = ArtifactTarget(
                chain=chain,
                binding=binding,
                config_root=self.config.config_root,
                platforms_root=self.config.platforms_root,
                default_web_group=self.config.web_group,
            )
            for descriptor in service.configurations_for(context.type):
                artifact = ConfigurationArtifact(
                    descriptor, target, templates=self.templates, hooks=self.hooks
                )
                planned.append(_PlannedArtifact(service=service, binding=binding, artifact=artifact))
        return planned

    def _describe_artifact(
        self,
        artifact: ConfigurationArtifact,
        errors: list[str] | None = None,
    ) -> ArtifactOutcome:
        path: Path | None = None
        try:
            path = artifact.path
        except ArtifactError as exc:
            if errors is not None:
                errors.append(_describe(exc))
        return ArtifactOutcome(
            name=artifact.descriptor.name,
            description=artifact.description,
            path=path,
            mode=artifact.mode,
            group=artifact.group,
        )

    def _verify_target(self, context: Context, run_post_actions: bool) -> TargetOutcome:
        outcome = TargetOutcome(name=context.name)
        if self.cancelled:
            outcome.errors.append("Cancelled before verification started.")
            return outcome

        start = time.perf_counter()
        outcome.state = VerifyState.VERIFYING
        try:
            self._run_target(context, outcome, run_post_actions)
        except (ContextStoreError, ServiceError) as exc:
            outcome.fail(exc)
        except Exception as exc:  # noqa: BLE001 - one target must not abort the others
            outcome.fail(exc)
            self._log(
                "error",
                f"Unexpected error verifying {context.identifier}",
                target=context.name,
                traceback=traceback.format_exc(),
            )
        outcome.state = VerifyState.FAILED if outcome.errors else VerifyState.VERIFIED
        outcome.duration_ms = _duration_ms(start)

        record = VerificationRecord.now(
            outcome.state,
            artifacts=[
                str(item.path)
                for item in outcome.artifacts
                if item.path is not None and item.error is None
            ],
            errors=outcome.errors,
            warnings=outcome.warnings,
        )
        try:
            self.store.record_verification(context, record)
        except (OSError, ContextStoreError) as exc:
            outcome.warnings.append(f"Could not record verification: {exc}")
        self._log(
            "info" if outcome.ok else "error",
            f"Verify {context.identifier}: {outcome.state.value}",
            target=context.name,
            errors=outcome.errors,
            warnings=outcome.warnings,
        )
        return outcome

    def _run_target(
        self,
        context: Context,
        outcome: TargetOutcome,
        run_post_actions: bool,
    ) -> None:
        planned = self._plan(context)
        involved: dict[str, tuple[Service, Mapping[str, Any]]] = {}
        for item in planned:
            artifact = item.artifact
            result = self._describe_artifact(artifact)
            outcome.artifacts.append(result)
            try:
                artifact.process()
            except RenderError as exc:
                result.error = _describe(exc)
                outcome.fail(exc)
                continue
            finally:
                result.warnings.extend(artifact.warnings)
                outcome.warnings.extend(artifact.warnings)
            try:
                written = self.writer.write(artifact)
            except WriteError as exc:
                result.error = _describe(exc)
                outcome.fail(exc)
                return
            except ArtifactError as exc:
                # Path resolution failures stay local to the artifact.
                result.error = _describe(exc)
                outcome.fail(exc)
                continue
            result.changed = written.changed
            result.warnings.extend(written.warnings)
            outcome.warnings.extend(written.warnings)
            involved.setdefault(item.service.key, (item.service, item.binding))

        if not run_post_actions:
            return
        for service, binding in involved.values():
            command = service.post_action_command(binding)
            if not command:
                continue
            outcome.post_actions.append(" ".join(command))
            try:
                run_post_action(
                    command,
                    timeout=self.config.verify.post_action_timeout,
                    runner=self._command_runner,
                )
            except ServiceError as exc:
                outcome.warnings.append(str(exc))
                self._log("warning", str(exc), target=context.name, service=service.key)

    def _log(self, level: str, message: str, **context: object) -> None:
        if self.logger is not None:
            self.logger.event(level, message, **context)


__all__ = [
    "ArtifactOutcome",
    "TargetOutcome",
    "TargetStatus",
    "VerifyOrchestrator",
    "VerifyReport",
]
