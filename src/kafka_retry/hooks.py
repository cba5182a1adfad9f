"""
Extension hooks invoked around retry and DLQ transitions.

Hooks subclass RetryHook and override any of ``before_retry``,
``after_retry``, ``before_dlq`` and ``after_dlq``. Which callbacks a hook
implements is resolved once, at registration, into a HookCapability flag
set; dispatch only consults the flags.
"""

import logging
from enum import Flag, auto
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple

from kafka_retry.exceptions import HookError
from kafka_retry.logging import get_logger, log_exception, log_with_context
from kafka_retry.message import RetryableMessage

logger = get_logger(__name__)


class HookCapability(Flag):
    NONE = 0
    BEFORE_RETRY = auto()
    AFTER_RETRY = auto()
    BEFORE_DLQ = auto()
    AFTER_DLQ = auto()


_CALLBACKS = (
    (HookCapability.BEFORE_RETRY, "before_retry"),
    (HookCapability.AFTER_RETRY, "after_retry"),
    (HookCapability.BEFORE_DLQ, "before_dlq"),
    (HookCapability.AFTER_DLQ, "after_dlq"),
)


class RetryHook:
    """
    Base class for retry/DLQ transition hooks.

    Override the callbacks you need. Subclasses may also set
    ``capabilities`` explicitly to restrict which callbacks run.

    Example:
        class AuditHook(RetryHook):
            async def before_dlq(self, message):
                await audit_log.write(message.metadata.original_topic, message.key_str)
    """

    capabilities: Optional[HookCapability] = None

    async def before_retry(self, message: RetryableMessage) -> None:
        pass

    async def after_retry(self, message: RetryableMessage, success: bool) -> None:
        pass

    async def before_dlq(self, message: RetryableMessage) -> None:
        pass

    async def after_dlq(self, message: RetryableMessage) -> None:
        pass

    def resolve_capabilities(self) -> HookCapability:
        """Explicit ``capabilities`` if declared, otherwise the overridden callbacks."""
        if self.capabilities is not None:
            return self.capabilities
        caps = HookCapability.NONE
        for flag, name in _CALLBACKS:
            if getattr(type(self), name) is not getattr(RetryHook, name):
                caps |= flag
        return caps


class FunctionHook(RetryHook):
    """
    Hook assembled from coroutine functions.

    Capabilities are exactly the callbacks that were supplied.

    Example:
        pipeline.add(FunctionHook(before_dlq=notify_on_call))
    """

    def __init__(
        self,
        before_retry: Optional[Callable[[RetryableMessage], Awaitable[None]]] = None,
        after_retry: Optional[Callable[[RetryableMessage, bool], Awaitable[None]]] = None,
        before_dlq: Optional[Callable[[RetryableMessage], Awaitable[None]]] = None,
        after_dlq: Optional[Callable[[RetryableMessage], Awaitable[None]]] = None,
        name: Optional[str] = None,
    ):
        self._before_retry = before_retry
        self._after_retry = after_retry
        self._before_dlq = before_dlq
        self._after_dlq = after_dlq
        self.name = name

        caps = HookCapability.NONE
        if before_retry is not None:
            caps |= HookCapability.BEFORE_RETRY
        if after_retry is not None:
            caps |= HookCapability.AFTER_RETRY
        if before_dlq is not None:
            caps |= HookCapability.BEFORE_DLQ
        if after_dlq is not None:
            caps |= HookCapability.AFTER_DLQ
        self.capabilities = caps

    async def before_retry(self, message: RetryableMessage) -> None:
        await self._before_retry(message)

    async def after_retry(self, message: RetryableMessage, success: bool) -> None:
        await self._after_retry(message, success)

    async def before_dlq(self, message: RetryableMessage) -> None:
        await self._before_dlq(message)

    async def after_dlq(self, message: RetryableMessage) -> None:
        await self._after_dlq(message)


def hook_name(hook: RetryHook) -> str:
    return getattr(hook, "name", None) or type(hook).__name__


class HookPipeline:
    """
    Ordered, sequential invocation of registered hooks.

    Only hooks with the matching capability run for a transition, in
    registration order, each awaited before the next. The first hook to
    raise aborts the rest of that transition with a HookError.
    """

    def __init__(self, hooks: Iterable[RetryHook] = ()):
        self._hooks: List[Tuple[RetryHook, HookCapability]] = []
        for hook in hooks:
            self.add(hook)

    def add(self, hook: RetryHook) -> None:
        if not isinstance(hook, RetryHook):
            raise TypeError(f"Hooks must subclass RetryHook, got {type(hook).__name__}")
        caps = hook.resolve_capabilities()
        self._hooks.append((hook, caps))
        log_with_context(
            logger,
            logging.DEBUG,
            "Registered hook",
            hook=hook_name(hook),
            stage=str(caps),
        )

    def __len__(self) -> int:
        return len(self._hooks)

    @property
    def hooks(self) -> List[RetryHook]:
        return [hook for hook, _ in self._hooks]

    async def _run(
        self,
        capability: HookCapability,
        stage: str,
        message: RetryableMessage,
        handler_error: Optional[BaseException],
        *args,
    ) -> None:
        for hook, caps in self._hooks:
            if not caps & capability:
                continue
            try:
                await getattr(hook, stage)(message, *args)
            except Exception as e:
                name = hook_name(hook)
                log_exception(
                    logger,
                    e,
                    "Hook failed, aborting remaining hooks",
                    hook=name,
                    stage=stage,
                )
                raise HookError(
                    f"Hook {name}.{stage} failed",
                    hook_name=name,
                    stage=stage,
                    cause=e,
                    handler_error=handler_error,
                ) from e

    async def before_retry(
        self, message: RetryableMessage, handler_error: Optional[BaseException] = None
    ) -> None:
        await self._run(HookCapability.BEFORE_RETRY, "before_retry", message, handler_error)

    async def after_retry(
        self,
        message: RetryableMessage,
        success: bool,
        handler_error: Optional[BaseException] = None,
    ) -> None:
        await self._run(
            HookCapability.AFTER_RETRY, "after_retry", message, handler_error, success
        )

    async def before_dlq(
        self, message: RetryableMessage, handler_error: Optional[BaseException] = None
    ) -> None:
        await self._run(HookCapability.BEFORE_DLQ, "before_dlq", message, handler_error)

    async def after_dlq(
        self, message: RetryableMessage, handler_error: Optional[BaseException] = None
    ) -> None:
        await self._run(HookCapability.AFTER_DLQ, "after_dlq", message, handler_error)


__all__ = [
    "HookCapability",
    "RetryHook",
    "FunctionHook",
    "HookPipeline",
]
