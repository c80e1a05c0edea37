from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol

import httpx

from reader_ai.types import SummarizeParams, SummaryLength, Task, TaskParameters
from reader_ai.worker.progress import ProgressCallback, ProgressEvent, ProgressStatus


logger = logging.getLogger("reader_ai.worker.runtime")


# Ordered by size/speed.
SUMMARIZATION_MODELS: dict[str, dict[str, str]] = {
    "distilbart-cnn-6-6": {"id": "sshleifer/distilbart-cnn-6-6", "size": "~460MB"},
    "distilbart-cnn-12-6": {"id": "sshleifer/distilbart-cnn-12-6", "size": "~1.2GB"},
    "bart-large-cnn": {"id": "facebook/bart-large-cnn", "size": "~1.6GB"},
}

# (min_length, max_length) in generated tokens.
SUMMARY_TOKEN_BUDGET: dict[SummaryLength, tuple[int, int]] = {
    SummaryLength.SHORT: (20, 75),
    SummaryLength.MEDIUM: (40, 150),
    SummaryLength.LONG: (80, 250),
    SummaryLength.EXTENDED: (120, 350),
}

# Files a seq2seq checkpoint needs at inference time.
_MODEL_FILE_PATTERNS = (
    "config.json",
    "generation_config.json",
    "tokenizer*",
    "vocab*",
    "merges.txt",
    "special_tokens_map.json",
    "*.spm",
    "sentencepiece*",
    "source.spm",
    "target.spm",
    "model.safetensors",
)
_FALLBACK_WEIGHTS = "pytorch_model.bin"


@dataclass(frozen=True)
class ModelKey:
    model_id: str
    task: Task

    def __str__(self) -> str:
        return f"{self.model_id}:{self.task.value}"


@dataclass(frozen=True)
class EngineOutput:
    text: str
    tokens: int


class Engine(Protocol):
    def run(self, text: str, params: TaskParameters) -> EngineOutput: ...

    def close(self) -> None: ...


def resolve_summarization_model(name: str) -> str:
    if name in SUMMARIZATION_MODELS:
        return SUMMARIZATION_MODELS[name]["id"]
    return name


def translation_model_id(template: str, source: str, target: str) -> str:
    return template.format(source=source.lower(), target=target.lower())


def _chunk_text_by_tokens(text: str, tokenizer, max_input_tokens: int) -> list[str]:
    """Split long text into chunks roughly limited by token count."""
    text = text.strip()
    if not text:
        return []

    words = text.split()
    chunks: list[str] = []
    current: list[str] = []

    # Greedy word accumulation with token-based check
    for w in words:
        current.append(w)
        if len(current) < 20:
            continue
        candidate = " ".join(current)
        token_len = len(tokenizer(candidate, add_special_tokens=False)["input_ids"])
        if token_len >= max_input_tokens:
            # move last word to next chunk
            current.pop()
            if current:
                chunks.append(" ".join(current))
            current = [w]

    if current:
        chunks.append(" ".join(current))
    return chunks


def _wanted(filename: str, siblings: set[str]) -> bool:
    if "/" in filename:
        return False
    if any(fnmatch.fnmatch(filename, p) for p in _MODEL_FILE_PATTERNS):
        return True
    # Older checkpoints only ship .bin weights.
    return filename == _FALLBACK_WEIGHTS and "model.safetensors" not in siblings


def fetch_model_files(model_id: str, on_progress: ProgressCallback, *, cache_dir: Optional[str] = None) -> str:
    """Download the checkpoint file by file so progress can be reported in bytes.

    Returns the local snapshot directory. Files already in the HF cache are not
    downloaded again; they still count towards `loaded`. When the hub cannot be
    reached the cached snapshot is used as is, with phase-only progress.
    """
    from huggingface_hub import HfApi, hf_hub_download, snapshot_download
    from huggingface_hub.errors import HfHubHTTPError

    on_progress(ProgressEvent(ProgressStatus.INITIATE, file=model_id))
    try:
        info = HfApi().model_info(model_id, files_metadata=True)
    except (OSError, HfHubHTTPError, httpx.HTTPError) as e:
        logger.warning("Model metadata for %s unavailable (%s); using the local cache", model_id, e)
        path = snapshot_download(model_id, cache_dir=cache_dir, local_files_only=True)
        on_progress(ProgressEvent(ProgressStatus.DONE, file=model_id))
        return path
    siblings = {s.rfilename for s in (info.siblings or [])}
    files = [s for s in (info.siblings or []) if _wanted(s.rfilename, siblings)]
    total = sum(s.size or 0 for s in files) or None

    loaded = 0
    for sibling in files:
        on_progress(ProgressEvent(ProgressStatus.DOWNLOAD, loaded=loaded, total=total, file=sibling.rfilename))
        hf_hub_download(model_id, sibling.rfilename, cache_dir=cache_dir)
        loaded += sibling.size or 0
        on_progress(ProgressEvent(ProgressStatus.PROGRESS, loaded=loaded, total=total, file=sibling.rfilename))

    on_progress(ProgressEvent(ProgressStatus.DONE, loaded=loaded, total=total, file=model_id))
    return snapshot_download(model_id, allow_patterns=[f.rfilename for f in files], cache_dir=cache_dir)


class Seq2SeqEngine:
    """One loaded tokenizer + seq2seq model. Not reentrant; the worker host serializes calls."""

    def __init__(self, model_id: str, tokenizer: Any, model: Any, device: Any, *, max_input_tokens: int = 1024) -> None:
        self.model_id = model_id
        self._tokenizer = tokenizer
        self._model = model
        self._device = device
        self._max_input_tokens = max_input_tokens

    def _maybe_prefix(self, text: str, params: TaskParameters) -> str:
        # T5-style models expect a task prefix.
        if "t5" in self.model_id.lower() and isinstance(params, SummarizeParams):
            if not text.lstrip().lower().startswith("summarize:"):
                return f"summarize: {text.strip()}"
        return text

    def _generate(self, text: str, **gen_kwargs: Any) -> tuple[str, int]:
        import torch

        inputs = self._tokenizer(
            text,
            return_tensors="pt",
            truncation=True,
            max_length=self._max_input_tokens,
        )
        inputs = {k: v.to(self._device) for k, v in inputs.items()}
        with torch.inference_mode():
            output_ids = self._model.generate(**inputs, **gen_kwargs)
        decoded = self._tokenizer.decode(output_ids[0], skip_special_tokens=True).strip()
        return decoded, int(output_ids.shape[-1])

    def run(self, text: str, params: TaskParameters) -> EngineOutput:
        chunks = _chunk_text_by_tokens(text, self._tokenizer, max_input_tokens=self._max_input_tokens)
        if not chunks:
            return EngineOutput(text="", tokens=0)

        if isinstance(params, SummarizeParams):
            min_length, max_length = SUMMARY_TOKEN_BUDGET[params.length]
            gen = {"num_beams": 4, "do_sample": False, "min_length": min_length, "max_length": max_length}
        else:
            gen = {"num_beams": 4, "do_sample": False, "max_length": self._max_input_tokens}

        tokens = 0
        pieces: list[str] = []
        for chunk in chunks:
            out, n = self._generate(self._maybe_prefix(chunk, params), **gen)
            pieces.append(out)
            tokens += n

        final = " ".join(pieces).strip()
        # Chunked summaries get a second pass to read as one text; translations are just joined.
        if isinstance(params, SummarizeParams) and len(pieces) > 1:
            final, n = self._generate(self._maybe_prefix(final, params), **gen)
            tokens += n
        return EngineOutput(text=final, tokens=tokens)

    def close(self) -> None:
        self._model = None
        self._tokenizer = None
        import torch

        if torch.cuda.is_available():
            torch.cuda.empty_cache()


class TransformersLoader:
    """Default model loader for the worker host: hub download + AutoModelForSeq2SeqLM."""

    def __init__(
        self,
        *,
        device: str = "auto",
        cache_dir: Optional[str] = None,
        model_dir: Optional[str] = None,
        max_input_tokens: int = 1024,
    ) -> None:
        self.device = device
        self.cache_dir = cache_dir
        self.model_dir = Path(model_dir) if model_dir else None
        self.max_input_tokens = max_input_tokens

    def _local_path(self, key: ModelKey) -> Optional[Path]:
        # Prefer a locally fine-tuned summarizer if present.
        if key.task is Task.SUMMARIZE and self.model_dir and (self.model_dir / "config.json").exists():
            return self.model_dir
        return None

    def __call__(self, key: ModelKey, on_progress: ProgressCallback) -> Seq2SeqEngine:
        local = self._local_path(key)
        if local is not None:
            logger.info("Loading local model from %s", local)
            on_progress(ProgressEvent(ProgressStatus.INITIATE, file=str(local)))
            path = str(local)
        else:
            logger.info("Fetching model %s", key.model_id)
            path = fetch_model_files(key.model_id, on_progress, cache_dir=self.cache_dir)

        # Heavy imports deferred.
        import torch
        from transformers import AutoModelForSeq2SeqLM, AutoTokenizer

        if self.device == "cuda" and torch.cuda.is_available():
            torch_device = torch.device("cuda")
        elif self.device == "auto":
            torch_device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
        else:
            torch_device = torch.device("cpu")

        tokenizer = AutoTokenizer.from_pretrained(path, use_fast=True)
        model = AutoModelForSeq2SeqLM.from_pretrained(path)
        model.to(torch_device)
        model.eval()

        on_progress(ProgressEvent(ProgressStatus.DONE, file=key.model_id))
        return Seq2SeqEngine(key.model_id, tokenizer, model, torch_device, max_input_tokens=self.max_input_tokens)


__all__ = [
    "SUMMARIZATION_MODELS",
    "SUMMARY_TOKEN_BUDGET",
    "ModelKey",
    "Engine",
    "EngineOutput",
    "Seq2SeqEngine",
    "TransformersLoader",
    "fetch_model_files",
    "resolve_summarization_model",
    "translation_model_id",
]
