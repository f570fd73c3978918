# src/assistant/orchestrator.py
#
# ServiceOrchestrator：對外的 façade
# 每次呼叫：Idle -> BuildPrompt -> CacheLookup -> {CacheHit -> Respond}
#                                            | {CacheMiss -> Dispatch -> Validate -> CacheStore -> Respond}
#          任何 dispatch 失敗（重試用完後）-> Fallback
#
# - 快取 key 不含對話歷史：同一個問題在同一段對話中再問一次也能命中
# - 對話紀錄（ConversationLog）寫入失敗只記 warning，不影響回覆
# - coalesce_requests：同一個 fingerprint 同時 miss 時只打一次 provider（single-flight）

from __future__ import annotations

import asyncio
import functools
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from .cache import ResponseCache, fingerprint
from .categories import CacheCategory, infer_category
from .client import RequestClient
from .clock import Clock, SystemClock
from .config import AssistantRuntimeConfig
from .errors import AIError, AINetworkError, InputRejectedError
from .modes import ModeConfig, ModeLike, ModeRegistry, ModeSwitch
from .providers import build_provider_transport
from .providers.base import ProviderTransport
from .providers.mock_provider import MockProvider
from .sanitize import sanitize_input
from .storage import (
    ConversationLog,
    InMemoryConversationLog,
    InMemoryKeyValueStore,
    JsonFileKeyValueStore,
    KeyValueStore,
)
from .types import AssistantReply, FallbackResponder, History, ResponseEnvelope, Usage
from . import observability as obs


FALLBACK_NOTICE = "[Offline response] The AI service is temporarily unavailable; this is a pre-written answer."
RECENT_CONVERSATIONS_LIMIT = 20
CONVERSATION_CONTEXT_LIMIT = 10


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ServiceOrchestrator:
    def __init__(
        self,
        client: RequestClient,
        cache: ResponseCache,
        modes: ModeRegistry,
        *,
        conversation_log: Optional[ConversationLog] = None,
        sanitizer: Optional[Callable[[Any], str]] = None,
        fallback: Optional[FallbackResponder] = None,
        clock: Optional[Clock] = None,
        config: Optional[AssistantRuntimeConfig] = None,
    ):
        self.client = client
        self.cache = cache
        self.modes = modes
        self.conversation_log = conversation_log
        self.config = config or AssistantRuntimeConfig()
        self.sanitizer = sanitizer or functools.partial(sanitize_input, max_chars=self.config.max_input_chars)
        self.fallback = fallback
        self.clock = clock or SystemClock()

        self.cache_enabled = self.config.cache_enabled
        self.active_conversation_id: Optional[str] = None

        self._inflight: Dict[str, asyncio.Future] = {}
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=RECENT_CONVERSATIONS_LIMIT)
        self._conversation_context: Dict[str, Deque[Dict[str, Any]]] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls,
        cfg: AssistantRuntimeConfig,
        *,
        transport: Optional[ProviderTransport] = None,
        store: Optional[KeyValueStore] = None,
        conversation_log: Optional[ConversationLog] = None,
        clock: Optional[Clock] = None,
    ) -> "ServiceOrchestrator":
        clock = clock or SystemClock()
        transport = transport or build_provider_transport(cfg)

        if store is None:
            store = JsonFileKeyValueStore(cfg.storage_path) if cfg.storage_path else InMemoryKeyValueStore()

        cache = ResponseCache(
            store,
            clock=clock,
            max_entries=cfg.max_cache_entries,
            max_context_entries=cfg.max_context_entries,
            ttl_overrides=cfg.default_ttl_per_category,
            prefix=cfg.cache_prefix,
        )
        return cls(
            RequestClient.from_config(cfg, transport, clock=clock),
            cache,
            ModeRegistry(default_mode=cfg.default_mode),
            conversation_log=conversation_log or InMemoryConversationLog(),
            fallback=MockProvider() if cfg.fallback_enabled else None,
            clock=clock,
            config=cfg,
        )

    # -------------------------
    # Lifecycle
    # -------------------------

    async def start(self) -> None:
        """啟動定期清理過期快取（sweep_interval_sec）。"""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def close(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        try:
            self.cache.flush()
        except OSError as e:
            obs.log_cache_failure("flush", e)

        aclose = getattr(self.client.transport, "aclose", None)
        if aclose is not None:
            await aclose()

    async def __aenter__(self) -> "ServiceOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _sweep_loop(self) -> None:
        while True:
            await self.clock.sleep(self.config.sweep_interval_sec)
            try:
                self.cache.sweep()
            except Exception as e:
                obs.log_cache_failure("sweep", e)

    # -------------------------
    # Public API
    # -------------------------

    async def send_message(
        self,
        user_text: Any,
        *,
        conversation_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        api_options: Optional[Dict[str, Any]] = None,
        image: Optional[str] = None,
        skip_cache: bool = False,
        allow_fallback: Optional[bool] = None,
    ) -> AssistantReply:
        trace_id = uuid.uuid4().hex[:12]
        started = time.perf_counter()

        # BuildPrompt
        text = self._check_input(user_text)
        cfg = self.modes.current_config
        conversation_id = await self._resolve_conversation(conversation_id, cfg, trace_id)
        history = await self._load_history(conversation_id)

        prompt = self.modes.get_prompt_template(text, history=history, context=context)
        options: Dict[str, Any] = {
            "temperature": cfg.temperature,
            "max_output_tokens": cfg.max_output_tokens,
            **(api_options or {}),
        }
        if image:
            options["image"] = image

        cache_key_prompt = self.modes.get_prompt_template(text, context=context)
        fp = fingerprint(cfg.id.value, cache_key_prompt, options.get("temperature"), options.get("max_output_tokens"))
        category = self._category_for(cfg, text)

        # 圖片不在 fingerprint 裡，帶圖的請求不走快取
        cacheable = self.cache_enabled and not image

        # CacheLookup
        if cacheable and not skip_cache:
            hit = self.cache.lookup(fp)
            if hit is not None:
                payload = hit.payload
                content = str(payload.get("content", ""))
                return self._build_reply(
                    conversation_id, content, cfg,
                    processing_time_ms=0,
                    usage=Usage.from_dict(payload.get("usage")),
                    category=hit.category,
                    from_cache=True,
                    trace_id=trace_id,
                    fp=fp,
                    history=history,
                )

        # Dispatch
        try:
            envelope = await self._dispatch(
                fp, prompt, options, trace_id,
                category=category if cacheable else None,
                mode=cfg.id.value,
                cache_prompt=text,
                coalesce=cacheable and self.config.coalesce_requests,
            )
        except AIError as e:
            if not self._fallback_allowed(allow_fallback):
                raise
            obs.log_fallback(trace_id, cfg.id.value, e)
            return self._fallback_reply(conversation_id, text, cfg, e, started, trace_id, fp, history)

        processing_ms = int((time.perf_counter() - started) * 1000)
        reply = self._build_reply(
            conversation_id, envelope.text, cfg,
            processing_time_ms=processing_ms,
            usage=envelope.usage,
            category=category.value,
            from_cache=False,
            trace_id=trace_id,
            fp=fp,
            history=history,
        )

        await self._persist_turn(conversation_id, text, reply, trace_id)
        self._refresh_context(conversation_id, history, text, reply)
        self._remember_recent(conversation_id, text, reply)
        return reply

    def set_mode(
        self,
        mode: ModeLike,
        *,
        preserve_context: Optional[bool] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> ModeSwitch:
        """preserve_context 沒指定時，依目標模式的 ModeConfig.preserve_context。"""
        if preserve_context is None:
            preserve_context = self.modes.get(mode).preserve_context
        switch = self.modes.set_mode(mode, context)
        if preserve_context:
            if self.active_conversation_id:
                self.add_conversation_context("mode_switch", {
                    "from": switch.previous_mode.value,
                    "to": switch.current_mode.value,
                })
        else:
            self.modes.clear_context(preserve_mode=True)
            if self.active_conversation_id:
                self._conversation_context.pop(self.active_conversation_id, None)
        return switch

    def add_conversation_context(self, kind: str, data: Dict[str, Any]) -> None:
        if not self.active_conversation_id:
            self.active_conversation_id = f"conv_{uuid.uuid4().hex[:12]}"
        items = self._conversation_context.setdefault(
            self.active_conversation_id, deque(maxlen=CONVERSATION_CONTEXT_LIMIT)
        )
        items.append({"type": kind, "data": dict(data), "timestamp": _utc_now_iso()})

    def get_conversation_context(self, conversation_id: Optional[str] = None) -> List[Dict[str, Any]]:
        target = conversation_id or self.active_conversation_id
        return list(self._conversation_context.get(target or "", ()))

    def clear_conversation(self, conversation_id: Optional[str] = None) -> None:
        target = conversation_id or self.active_conversation_id
        if target:
            self._conversation_context.pop(target, None)
            self.cache.drop_context(target)
        if conversation_id is None:
            self.active_conversation_id = None

    async def get_conversation_history(self, limit: int = 10, conversation_id: Optional[str] = None) -> History:
        target = conversation_id or self.active_conversation_id
        if not target or self.conversation_log is None or limit <= 0:
            return []

        try:
            conv = await self.conversation_log.load_conversation(target)
        except Exception as e:
            obs.log_storage_failure(None, "load_conversation", e)
            return []

        messages = (conv or {}).get("messages") or []
        return [
            {"role": m.get("role"), "content": m.get("content"), "timestamp": m.get("timestamp")}
            for m in messages[-limit:]
        ]

    def recent_conversations(self, limit: int = 10) -> List[Dict[str, Any]]:
        return list(self._recent)[:max(0, limit)]

    def current_mode_config(self) -> ModeConfig:
        return self.modes.current_config

    def get_available_modes(self) -> List[Dict[str, Any]]:
        return self.modes.get_available_modes()

    def get_cache_stats(self) -> Dict[str, Any]:
        stats = self.cache.stats()
        stats["enabled"] = self.cache_enabled
        return stats

    def invalidate_cache(self, **criteria: Any) -> int:
        return self.cache.invalidate(**criteria)

    def clear_cache(self) -> None:
        self.cache.clear()

    def set_cache_enabled(self, enabled: bool) -> None:
        self.cache_enabled = bool(enabled)

    def is_ready(self) -> bool:
        if self.config.provider == "mock":
            return True
        return bool(self.client.api_key)

    # -------------------------
    # Steps
    # -------------------------

    def _check_input(self, user_text: Any) -> str:
        if not isinstance(user_text, str):
            raise InputRejectedError("Invalid input: message must be a non-empty string")
        if len(user_text) > self.config.reject_input_chars:
            raise InputRejectedError(
                f"Invalid input: message is longer than {self.config.reject_input_chars} characters"
            )
        text = self.sanitizer(user_text)
        if not text:
            raise InputRejectedError("Invalid input: message must be a non-empty string")
        return text

    async def _resolve_conversation(self, conversation_id: Optional[str], cfg: ModeConfig, trace_id: str) -> str:
        target = conversation_id or self.active_conversation_id
        if not target:
            target = None
            if self.conversation_log is not None:
                try:
                    target = await self.conversation_log.create_conversation({"mode": cfg.id.value})
                except Exception as e:
                    obs.log_storage_failure(trace_id, "create_conversation", e)
            target = target or f"conv_{uuid.uuid4().hex[:12]}"

        self.active_conversation_id = target
        return target

    async def _load_history(self, conversation_id: str) -> History:
        if self.cache_enabled:
            snapshot = self.cache.get_context(conversation_id)
            if snapshot is not None:
                return list(snapshot.recent_history)

        history = await self.get_conversation_history(self.config.history_window, conversation_id)
        if history and self.cache_enabled:
            self.cache.cache_context(conversation_id, history)
        return history

    def _category_for(self, cfg: ModeConfig, text: str) -> CacheCategory:
        return cfg.cache_category or infer_category(text)

    async def _dispatch(
        self,
        fp: str,
        prompt: str,
        options: Dict[str, Any],
        trace_id: str,
        *,
        category: Optional[CacheCategory],
        mode: str,
        cache_prompt: str,
        coalesce: bool,
    ) -> ResponseEnvelope:
        if coalesce and fp in self._inflight:
            # 已有同樣的請求在路上：等它的結果；shield 讓自己被取消時不會連帶取消它
            return await asyncio.shield(self._inflight[fp])

        if not coalesce:
            return await self._generate_and_store(fp, prompt, options, trace_id, category, mode, cache_prompt)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        # 沒有 follower 時也標記為已讀取，避免 "exception was never retrieved"
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._inflight[fp] = future
        try:
            envelope = await self._generate_and_store(fp, prompt, options, trace_id, category, mode, cache_prompt)
        except Exception as e:
            future.set_exception(e)
            raise
        except BaseException:
            future.set_exception(AINetworkError("Shared provider call was cancelled"))
            raise
        else:
            future.set_result(envelope)
            return envelope
        finally:
            self._inflight.pop(fp, None)

    async def _generate_and_store(
        self,
        fp: str,
        prompt: str,
        options: Dict[str, Any],
        trace_id: str,
        category: Optional[CacheCategory],
        mode: str,
        cache_prompt: str,
    ) -> ResponseEnvelope:
        envelope = await self.client.generate(prompt, trace_id=trace_id, mode=mode, fingerprint=fp, **options)

        # CacheStore
        if category is not None:
            self.cache.store(
                fp,
                category,
                {"content": envelope.text, "usage": envelope.usage.to_dict(), "mode": mode},
                mode=mode,
                prompt=cache_prompt,
            )
        return envelope

    def _fallback_allowed(self, allow_fallback: Optional[bool]) -> bool:
        if self.fallback is None:
            return False
        if allow_fallback is not None:
            return allow_fallback
        return self.config.fallback_enabled

    def _fallback_reply(
        self,
        conversation_id: str,
        text: str,
        cfg: ModeConfig,
        error: AIError,
        started: float,
        trace_id: str,
        fp: str,
        history: History,
    ) -> AssistantReply:
        envelope = self.fallback.respond(text, cfg.id.value)
        reply = self._build_reply(
            conversation_id, f"{FALLBACK_NOTICE}\n\n{envelope.text}", cfg,
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            usage=envelope.usage,
            category=None,
            from_cache=False,
            trace_id=trace_id,
            fp=fp,
            history=history,
        )
        reply.is_fallback = True
        reply.error_type = type(error).__name__
        return reply

    def _build_reply(
        self,
        conversation_id: str,
        content: str,
        cfg: ModeConfig,
        *,
        processing_time_ms: int,
        usage: Usage,
        category: Optional[str],
        from_cache: bool,
        trace_id: str,
        fp: str,
        history: History,
    ) -> AssistantReply:
        return AssistantReply(
            id=f"resp_{uuid.uuid4().hex[:12]}",
            conversation_id=conversation_id,
            content=content,
            mode=cfg.id.value,
            timestamp=_utc_now_iso(),
            processing_time_ms=processing_time_ms,
            usage=usage,
            context={
                "trace_id": trace_id,
                "fingerprint": fp,
                "history_turns": len(history),
                "mode_context": dict(self.modes.context),
            },
            from_cache=from_cache,
            category=category,
            formatted=cfg.formatter(content),
        )

    async def _persist_turn(self, conversation_id: str, text: str, reply: AssistantReply, trace_id: str) -> None:
        if self.conversation_log is None:
            return
        try:
            conv = await self.conversation_log.load_conversation(conversation_id)
            if conv is None:
                await self.conversation_log.create_conversation({"id": conversation_id, "mode": reply.mode})
            await self.conversation_log.add_message(conversation_id, {
                "role": "user",
                "content": text,
                "timestamp": reply.timestamp,
            })
            await self.conversation_log.add_message(conversation_id, {
                "role": "assistant",
                "content": reply.content,
                "timestamp": reply.timestamp,
                "metadata": {
                    "processing_time_ms": reply.processing_time_ms,
                    "usage": reply.usage.to_dict(),
                    "mode": reply.mode,
                },
            })
        except Exception as e:
            obs.log_storage_failure(trace_id, "add_message", e)

    def _refresh_context(self, conversation_id: str, history: History, text: str, reply: AssistantReply) -> None:
        if not self.cache_enabled:
            return
        turns = list(history) + [
            {"role": "user", "content": text, "timestamp": reply.timestamp},
            {"role": "assistant", "content": reply.content, "timestamp": reply.timestamp},
        ]
        self.cache.cache_context(conversation_id, turns[-self.config.history_window:])

    def _remember_recent(self, conversation_id: str, text: str, reply: AssistantReply) -> None:
        entry = {
            "id": conversation_id,
            "title": text[:50] + ("..." if len(text) > 50 else ""),
            "preview": reply.content[:100],
            "mode": reply.mode,
            "timestamp": reply.timestamp,
        }
        kept = [c for c in self._recent if c["id"] != conversation_id]
        self._recent.clear()
        self._recent.append(entry)
        self._recent.extend(kept[:RECENT_CONVERSATIONS_LIMIT - 1])
