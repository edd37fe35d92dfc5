"""
HuggingFace Client - Chat model used by the dialogue engine

Responsibilities:
- Load the instruct model and tokenizer (4-bit NF4 on CUDA by default)
- Turn role/content chat transcripts into a reply
- Produce JSON for the intent classifier, repairing common model slips
- Surface CUDA out-of-memory errors instead of hiding them

Design principles:
- Constructed once per process and injected (no module-level model)
- The tokenizer's own chat template decides the prompt layout
- Settings come from constructor arguments or TAPAWAY_* environment variables
"""

import os
import re
import time
import logging
from dataclasses import dataclass
from typing import Dict, List

import torch
from transformers import (
    AutoModelForCausalLM,
    AutoTokenizer,
    BitsAndBytesConfig
)

logger = logging.getLogger(__name__)

DEVICE_CUDA = "cuda"
DEVICE_CPU = "cpu"

DEFAULT_MODEL_NAME = "mistralai/Mistral-7B-Instruct-v0.2"
CHAT_MAX_TOKENS = 500
CHAT_TEMPERATURE = 0.7
JSON_MAX_TOKENS = 150

TRUTHY = {"1", "true", "yes", "on"}

_CODE_FENCE = re.compile(r'^```(?:json)?\s*|\s*```$')


@dataclass(frozen=True)
class Generation:
    """One completion plus its token accounting"""
    text: str
    prompt_tokens: int
    completion_tokens: int
    latency_ms: float


def repair_json(text: str) -> str:
    """
    Best-effort cleanup of a model's JSON object output.

    Drops markdown fences and any chatter around the outermost braces, then
    evens out the brace count (naively, braces inside strings are counted too).

    Returns:
        str: Candidate JSON string, caller still has to json.loads() it
    """
    cleaned = _CODE_FENCE.sub('', text.strip()).strip()

    start = cleaned.find('{')
    end = cleaned.rfind('}')
    if start == -1 or end == -1:
        logger.warning("Model JSON output has no object braces")
        return cleaned
    cleaned = cleaned[start:end + 1]

    balance = cleaned.count('{') - cleaned.count('}')
    if balance > 0:
        cleaned += '}' * balance
        logger.debug(f"Appended {balance} closing braces to model JSON")
    while balance < 0:
        last = cleaned.rfind('}')
        cleaned = cleaned[:last] + cleaned[last + 1:]
        balance += 1
        logger.debug("Removed surplus closing brace from model JSON")

    return cleaned


def render_inst_prompt(messages: List[Dict[str, str]]) -> str:
    """
    [INST] rendering for tokenizers that ship without a chat template.

    System content is folded into the first user turn.
    """
    system = '\n\n'.join(m['content'] for m in messages if m['role'] == 'system')
    lines = []
    for message in messages:
        if message['role'] == 'system':
            continue
        if message['role'] != 'user':
            lines.append(message['content'])
            continue
        content = f"{system}\n\n{message['content']}" if system else message['content']
        system = ''
        lines.append(f"[INST] {content} [/INST]")
    return '\n'.join(lines)


class HuggingFaceClient:
    """Local chat model behind generate_chat() / generate_json()"""

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL_NAME,
        load_in_4bit: bool = True,
        device: str = DEVICE_CUDA
    ) -> None:
        """
        Args:
            model_name: HuggingFace hub id of an instruct model
            load_in_4bit: NF4 quantization (ignored on CPU)
            device: "cuda" or "cpu"

        Raises:
            RuntimeError: If CUDA is requested but missing
        """
        if device == DEVICE_CUDA and not torch.cuda.is_available():
            raise RuntimeError("CUDA requested but not available. Check nvidia-smi.")

        self.model_name = model_name
        self.device = device
        self.tokenizer = self._load_tokenizer(model_name)
        self.model = self._load_model(model_name, load_in_4bit and device == DEVICE_CUDA)
        self.model.eval()

        logger.info(f"HuggingFace client ready ({model_name} on {device})")

    @classmethod
    def from_env(cls) -> "HuggingFaceClient":
        """Client configured from TAPAWAY_MODEL_NAME, TAPAWAY_LOAD_IN_4BIT and TAPAWAY_DEVICE"""
        return cls(
            model_name=os.getenv("TAPAWAY_MODEL_NAME", DEFAULT_MODEL_NAME),
            load_in_4bit=os.getenv("TAPAWAY_LOAD_IN_4BIT", "true").strip().lower() in TRUTHY,
            device=os.getenv("TAPAWAY_DEVICE", DEVICE_CUDA)
        )

    # ========================
    # Loading
    # ========================

    def _load_tokenizer(self, model_name: str):
        try:
            tokenizer = AutoTokenizer.from_pretrained(model_name)
        except Exception as e:
            logger.error(f"Failed to load tokenizer for {model_name}: {e}")
            raise

        if tokenizer.pad_token is None:
            if tokenizer.eos_token is not None:
                tokenizer.pad_token = tokenizer.eos_token
            else:
                tokenizer.add_special_tokens({'pad_token': '[PAD]'})
                logger.warning("Tokenizer had no pad or eos token, added [PAD]")
        return tokenizer

    def _load_model(self, model_name: str, quantize: bool):
        on_gpu = self.device == DEVICE_CUDA
        quantization_config = None
        if quantize:
            quantization_config = BitsAndBytesConfig(
                load_in_4bit=True,
                bnb_4bit_quant_type="nf4",
                bnb_4bit_compute_dtype=torch.bfloat16,
                bnb_4bit_use_double_quant=True
            )
        logger.info(f"Loading {model_name} (device={self.device}, 4bit={quantize})")

        try:
            model = AutoModelForCausalLM.from_pretrained(
                model_name,
                quantization_config=quantization_config,
                device_map="auto" if on_gpu else None,
                torch_dtype=torch.bfloat16 if on_gpu else torch.float32
            )
        except torch.cuda.OutOfMemoryError:
            logger.error(f"CUDA out of memory loading {model_name}; try CPU or a smaller model")
            raise
        except Exception as e:
            logger.error(f"Failed to load model {model_name}: {e}")
            raise

        if on_gpu:
            gigabytes = torch.cuda.memory_allocated() / 1e9
            logger.info(f"GPU memory after load: {gigabytes:.2f}GB allocated")
        return model

    # ========================
    # Generation
    # ========================

    def format_chat(self, messages: List[Dict[str, str]]) -> str:
        if getattr(self.tokenizer, 'chat_template', None):
            return self.tokenizer.apply_chat_template(
                messages, tokenize=False, add_generation_prompt=True
            )
        return render_inst_prompt(messages)

    def _complete(self, prompt: str, max_tokens: int, temperature: float) -> Generation:
        started = time.time()
        inputs = self.tokenizer(prompt, return_tensors="pt")
        if self.device == DEVICE_CUDA:
            inputs = inputs.to(DEVICE_CUDA)
        prompt_tokens = inputs.input_ids.shape[1]

        sampling = temperature > 0
        try:
            with torch.no_grad():
                output = self.model.generate(
                    inputs.input_ids,
                    attention_mask=inputs.attention_mask,
                    max_new_tokens=max_tokens,
                    do_sample=sampling,
                    temperature=temperature if sampling else None,
                    pad_token_id=self.tokenizer.pad_token_id
                )
        except torch.cuda.OutOfMemoryError:
            logger.error(f"CUDA out of memory generating ({prompt_tokens} prompt tokens, max {max_tokens} new)")
            raise

        new_ids = output[0][prompt_tokens:]
        generation = Generation(
            text=self.tokenizer.decode(new_ids, skip_special_tokens=True),
            prompt_tokens=prompt_tokens,
            completion_tokens=len(new_ids),
            latency_ms=(time.time() - started) * 1000,
        )
        logger.debug(
            f"Generated {generation.completion_tokens} tokens from {prompt_tokens} "
            f"in {generation.latency_ms:.0f}ms"
        )
        return generation

    def generate_chat(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int = CHAT_MAX_TOKENS,
        temperature: float = CHAT_TEMPERATURE
    ) -> str:
        """
        Assistant reply for a transcript of {'role', 'content'} messages.
        """
        prompt = self.format_chat(messages)
        return self._complete(prompt, max_tokens, temperature).text.strip()

    def generate_json(
        self,
        prompt: str,
        max_tokens: int = JSON_MAX_TOKENS,
        temperature: float = 0.0
    ) -> str:
        """
        Greedy completion of a JSON-only prompt, sent as a single user turn.

        Returns:
            str: Repaired JSON text (not parsed)
        """
        formatted = self.format_chat([{'role': 'user', 'content': prompt}])
        return repair_json(self._complete(formatted, max_tokens, temperature).text)
