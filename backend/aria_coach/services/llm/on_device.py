"""
In-process on-device LLM engine (third fallback tier).

Runs a small Qwen3 chat model with transformers on the host GPU (CUDA or
Apple MPS). The engine is a process-wide singleton holding at most one
loaded model:

- ``load_model`` deduplicates concurrent loads of the same model and unloads
  the previous model before loading a different one
- ``unload`` interrupts any in-flight generation and waits for it to finish
- ``complete`` / ``stream_complete`` run generation in a worker thread so the
  event loop never blocks; a ``CancellationToken`` or ``interrupt()`` stops
  generation between tokens

Hosts without compatible GPU compute raise ``OnDeviceCapabilityError`` with
cause ``no_gpu``; memory shortfall, missing model files and download failures
map to ``out_of_memory``, ``model_not_found`` and ``no_network``.

Environment configuration (read by ``get_on_device_engine``):
- ENABLE_ON_DEVICE_LLM: "false" disables the tier (default: true)
- ON_DEVICE_MODEL: Hugging Face model id (default: Qwen/Qwen3-1.7B)
"""
import asyncio
import os
import re
import threading
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol

import psutil
import torch
from pydantic import BaseModel
from transformers import (
    AutoModelForCausalLM,
    AutoTokenizer,
    StoppingCriteria,
    StoppingCriteriaList,
    TextIteratorStreamer,
)

from aria_coach.core.logging import get_logger
from aria_coach.core.metrics import set_on_device_model_loaded
from aria_coach.services.llm.errors import (
    LLMCancelledError,
    LLMResponseError,
    OnDeviceCapabilityError,
)
from aria_coach.services.llm.providers import Message

logger = get_logger(__name__)

_THINK_BLOCK = re.compile(r"<think>.*?</think>\s*", re.DOTALL)


class OnDeviceModel(BaseModel):
    id: str
    name: str
    vram_mb: int
    description: str


ON_DEVICE_MODELS: Dict[str, OnDeviceModel] = {
    m.id: m
    for m in (
        OnDeviceModel(
            id="Qwen/Qwen3-1.7B",
            name="Qwen3 1.7B",
            vram_mb=2037,
            description="Équilibre qualité / mémoire (recommandé)",
        ),
        OnDeviceModel(
            id="Qwen/Qwen3-0.6B",
            name="Qwen3 0.6B",
            vram_mb=1403,
            description="Très léger, qualité limitée",
        ),
        OnDeviceModel(
            id="Qwen/Qwen3-4B",
            name="Qwen3 4B",
            vram_mb=3432,
            description="Meilleure qualité, GPU récent requis",
        ),
    )
}
DEFAULT_ON_DEVICE_MODEL = "Qwen/Qwen3-1.7B"


class EngineStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    GENERATING = "generating"
    ERROR = "error"


class OnDeviceBackend(Protocol):
    """Compute backend used by the engine; swapped for a fake in tests."""

    def detect_device(self) -> Optional[str]: ...

    def available_memory_mb(self, device: str) -> Optional[int]: ...

    def load(self, model_id: str, device: str) -> Any: ...

    def generate(
        self,
        handle: Any,
        messages: List[Message],
        temperature: float,
        max_tokens: int,
        should_stop: Callable[[], bool],
        on_text: Optional[Callable[[str], None]] = None,
    ) -> str: ...

    def release(self, handle: Any) -> None: ...


class _StopWhen(StoppingCriteria):
    def __init__(self, should_stop: Callable[[], bool]):
        self._should_stop = should_stop

    def __call__(self, input_ids, scores, **kwargs) -> bool:
        return self._should_stop()


class TransformersBackend:
    """transformers + torch backend (CUDA, then MPS)."""

    def detect_device(self) -> Optional[str]:
        if torch.cuda.is_available():
            return "cuda"
        mps = getattr(torch.backends, "mps", None)
        if mps is not None and mps.is_available():
            return "mps"
        return None

    def available_memory_mb(self, device: str) -> Optional[int]:
        if device == "cuda":
            free_bytes, _total = torch.cuda.mem_get_info()
            return int(free_bytes // (1024 * 1024))
        if device == "mps":
            # unified memory: the GPU shares host RAM
            return int(psutil.virtual_memory().available // (1024 * 1024))
        return None

    def load(self, model_id: str, device: str) -> Any:
        tokenizer = AutoTokenizer.from_pretrained(model_id)
        model = AutoModelForCausalLM.from_pretrained(
            model_id,
            torch_dtype=torch.float16 if device == "cuda" else "auto",
        )
        model.to(device)
        model.eval()
        return {"tokenizer": tokenizer, "model": model, "device": device}

    def generate(
        self,
        handle: Any,
        messages: List[Message],
        temperature: float,
        max_tokens: int,
        should_stop: Callable[[], bool],
        on_text: Optional[Callable[[str], None]] = None,
    ) -> str:
        tokenizer = handle["tokenizer"]
        model = handle["model"]
        prompt = tokenizer.apply_chat_template(
            messages,
            tokenize=False,
            add_generation_prompt=True,
            enable_thinking=False,
        )
        inputs = tokenizer(prompt, return_tensors="pt").to(handle["device"])
        streamer = TextIteratorStreamer(tokenizer, skip_prompt=True, skip_special_tokens=True)

        generate_kwargs: Dict[str, Any] = dict(
            **inputs,
            max_new_tokens=max_tokens,
            streamer=streamer,
            stopping_criteria=StoppingCriteriaList([_StopWhen(should_stop)]),
            do_sample=temperature > 0,
        )
        if temperature > 0:
            generate_kwargs["temperature"] = temperature

        worker = threading.Thread(target=model.generate, kwargs=generate_kwargs, daemon=True)
        worker.start()
        pieces: List[str] = []
        for text in streamer:
            pieces.append(text)
            if on_text is not None and text:
                on_text(text)
        worker.join()
        return "".join(pieces)

    def release(self, handle: Any) -> None:
        device = handle.get("device")
        handle.clear()
        if device == "cuda":
            torch.cuda.empty_cache()


def _classify_load_error(exc: Exception) -> str:
    message = str(exc).lower()
    if isinstance(exc, torch.cuda.OutOfMemoryError) or "out of memory" in message:
        return "out_of_memory"
    if "connect" in message or "network" in message or "offline" in message:
        return "no_network"
    if "not a valid model identifier" in message or "404" in message or "does not appear to have" in message:
        return "model_not_found"
    return "load_failed"


def _log_preload_result(task: "asyncio.Future[None]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("on_device_preload_failed", error=str(exc), error_type=type(exc).__name__)


_CAUSE_MESSAGES = {
    "no_gpu": "Aucun GPU compatible (CUDA ou Apple MPS) n'est disponible sur cette machine.",
    "out_of_memory": "Mémoire GPU insuffisante pour charger ce modèle.",
    "model_not_found": "Modèle introuvable.",
    "no_network": "Téléchargement du modèle impossible : pas de connexion réseau.",
    "load_failed": "Échec du chargement du modèle.",
    "disabled": "Le moteur local embarqué est désactivé.",
}


class OnDeviceEngine:
    """Singleton-style engine; at most one model loaded at a time."""

    def __init__(
        self,
        backend: Optional[OnDeviceBackend] = None,
        default_model_id: str = DEFAULT_ON_DEVICE_MODEL,
        enabled: bool = True,
    ):
        self._backend = backend or TransformersBackend()
        self.default_model_id = default_model_id
        self.enabled = enabled

        self.status = EngineStatus.IDLE
        self.model_id: Optional[str] = None
        self.device: Optional[str] = None
        self.progress = 0.0
        self.error: Optional[str] = None

        self._handle: Any = None
        self._load_task: Optional[asyncio.Future] = None
        self._loading_model_id: Optional[str] = None
        self._generation_lock = asyncio.Lock()
        self._interrupt = threading.Event()

    # ------------------------------------------------------------------ #
    # Capability and status
    # ------------------------------------------------------------------ #

    def is_supported(self) -> bool:
        """True when the tier is enabled and the host exposes GPU compute."""
        if not self.enabled:
            return False
        try:
            return self._backend.detect_device() is not None
        except RuntimeError as exc:
            logger.warning("on_device_detect_failed", error=str(exc))
            return False

    @property
    def is_ready(self) -> bool:
        return self._handle is not None and self.status in (EngineStatus.READY, EngineStatus.GENERATING)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "model_id": self.model_id,
            "loading_model_id": self._loading_model_id if self.status == EngineStatus.LOADING else None,
            "device": self.device,
            "progress": self.progress,
            "error": self.error,
            "supported": self.is_supported(),
            "models": [m.model_dump() for m in ON_DEVICE_MODELS.values()],
        }

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def load_model(self, model_id: Optional[str] = None) -> None:
        """
        Load ``model_id`` (default model when None), waiting for completion.

        Raises:
            OnDeviceCapabilityError: disabled tier, unknown model, no GPU,
                not enough memory, or a failed download/load.
        """
        model_id = model_id or self.default_model_id
        if not self.enabled:
            raise OnDeviceCapabilityError("disabled", _CAUSE_MESSAGES["disabled"])
        if model_id not in ON_DEVICE_MODELS:
            raise OnDeviceCapabilityError("model_not_found", f"{_CAUSE_MESSAGES['model_not_found']} ({model_id})")

        if self._load_task is not None and not self._load_task.done():
            if self._loading_model_id == model_id:
                await asyncio.shield(self._load_task)
                return
            # A different model is loading; let it settle before switching.
            await asyncio.gather(asyncio.shield(self._load_task), return_exceptions=True)

        if self._handle is not None and self.model_id == model_id:
            return
        if self._handle is not None:
            await self.unload()

        self._loading_model_id = model_id
        self._load_task = asyncio.ensure_future(self._load(model_id))
        await asyncio.shield(self._load_task)

    async def _load(self, model_id: str) -> None:
        self.status = EngineStatus.LOADING
        self.progress = 0.0
        self.error = None
        try:
            device = self._backend.detect_device()
            if device is None:
                raise OnDeviceCapabilityError("no_gpu", _CAUSE_MESSAGES["no_gpu"])

            required = ON_DEVICE_MODELS[model_id].vram_mb
            free = self._backend.available_memory_mb(device)
            if free is not None and free < required:
                raise OnDeviceCapabilityError(
                    "out_of_memory",
                    f"{_CAUSE_MESSAGES['out_of_memory']} ({free} Mo libres, {required} Mo requis)",
                )

            logger.info("on_device_model_loading", model_id=model_id, device=device)
            try:
                handle = await asyncio.to_thread(self._backend.load, model_id, device)
            except Exception as exc:
                cause = _classify_load_error(exc)
                raise OnDeviceCapabilityError(cause, f"{_CAUSE_MESSAGES[cause]} ({exc})") from exc
        except OnDeviceCapabilityError as exc:
            self.status = EngineStatus.ERROR
            self.error = exc.message
            logger.warning("on_device_model_load_failed", model_id=model_id, cause=exc.cause, error=exc.message)
            raise

        self._handle = handle
        self.model_id = model_id
        self.device = device
        self.progress = 1.0
        self.status = EngineStatus.READY
        set_on_device_model_loaded(True)
        logger.info("on_device_model_ready", model_id=model_id, device=device)

    async def ensure_ready(self) -> None:
        """Lazily load the default model when nothing is loaded."""
        if not self.is_ready:
            await self.load_model(self.model_id or self.default_model_id)

    def preload(self) -> "asyncio.Future[None]":
        """Start loading the default model in the background."""
        task = asyncio.ensure_future(self.load_model())
        task.add_done_callback(_log_preload_result)
        return task

    def interrupt(self) -> None:
        """Stop the current generation at the next token boundary."""
        self._interrupt.set()

    async def unload(self) -> None:
        """Interrupt generation, wait for it, then release the model."""
        self.interrupt()
        async with self._generation_lock:
            handle, self._handle = self._handle, None
            if handle is not None:
                await asyncio.to_thread(self._backend.release, handle)
                logger.info("on_device_model_unloaded", model_id=self.model_id)
            self.model_id = None
            self.device = None
            self.progress = 0.0
            self.status = EngineStatus.IDLE
            self._interrupt.clear()
        set_on_device_model_loaded(False)

    # ------------------------------------------------------------------ #
    # Generation
    # ------------------------------------------------------------------ #

    def _stop_predicate(self, cancel_token) -> Callable[[], bool]:
        def should_stop() -> bool:
            return self._interrupt.is_set() or (cancel_token is not None and cancel_token.cancelled)
        return should_stop

    async def complete(
        self,
        messages: List[Message],
        temperature: float = 0.3,
        max_tokens: int = 1024,
        cancel_token=None,
    ) -> str:
        """
        Generate a full completion.

        Raises:
            OnDeviceCapabilityError: the model cannot be loaded
            LLMCancelledError: cancelled or interrupted mid-generation
            LLMResponseError: empty output
        """
        await self.ensure_ready()
        async with self._generation_lock:
            if self._handle is None:
                raise OnDeviceCapabilityError("load_failed", "Modèle déchargé pendant l'attente")
            self.status = EngineStatus.GENERATING
            should_stop = self._stop_predicate(cancel_token)
            try:
                text = await asyncio.to_thread(
                    self._backend.generate,
                    self._handle,
                    messages,
                    temperature,
                    max_tokens,
                    should_stop,
                    None,
                )
            finally:
                self.status = EngineStatus.READY
            if should_stop():
                raise LLMCancelledError("On-device generation interrupted")

        text = _THINK_BLOCK.sub("", text).strip()
        if not text:
            raise LLMResponseError("Empty on-device completion")
        return text

    async def stream_complete(
        self,
        messages: List[Message],
        temperature: float = 0.3,
        max_tokens: int = 1024,
        cancel_token=None,
    ) -> AsyncIterator[str]:
        """Yield text pieces as the worker thread produces them."""
        await self.ensure_ready()
        async with self._generation_lock:
            if self._handle is None:
                raise OnDeviceCapabilityError("load_failed", "Modèle déchargé pendant l'attente")
            self.status = EngineStatus.GENERATING
            loop = asyncio.get_running_loop()
            queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
            should_stop = self._stop_predicate(cancel_token)

            def on_text(piece: str) -> None:
                loop.call_soon_threadsafe(queue.put_nowait, piece)

            task = asyncio.ensure_future(
                asyncio.to_thread(
                    self._backend.generate,
                    self._handle,
                    messages,
                    temperature,
                    max_tokens,
                    should_stop,
                    on_text,
                )
            )
            task.add_done_callback(lambda _: queue.put_nowait(None))
            try:
                while True:
                    piece = await queue.get()
                    if piece is None:
                        break
                    yield piece
                await task
            finally:
                if not task.done():
                    self.interrupt()
                    await asyncio.gather(task, return_exceptions=True)
                    self._interrupt.clear()
                self.status = EngineStatus.READY
            if should_stop():
                raise LLMCancelledError("On-device generation interrupted")


_on_device_engine: Optional[OnDeviceEngine] = None


def get_on_device_engine() -> OnDeviceEngine:
    """Process-wide engine singleton."""
    global _on_device_engine
    if _on_device_engine is None:
        enabled = os.getenv("ENABLE_ON_DEVICE_LLM", "true").lower() == "true"
        _on_device_engine = OnDeviceEngine(
            default_model_id=os.getenv("ON_DEVICE_MODEL", DEFAULT_ON_DEVICE_MODEL),
            enabled=enabled,
        )
    return _on_device_engine
