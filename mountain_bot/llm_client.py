"""LLM integration for trivia generation with an OpenAI-compatible API."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import openai

from .models import TriviaItem, ValidationFailure

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")

TRIVIA_PROMPT = """実践的な登山知識を問う4択クイズを{count}問生成してください。

要件:
- 登山の安全、装備選択、気象判断、高山病対策、ルートファインディング、遭難対策など実践的な知識
- 問題文は30文字以内、選択肢は15文字以内の簡潔な文にする
- 各問題は4つの異なる選択肢を持つ
- 正解は選択肢の中の1つと完全に一致させる
- JSON配列形式で出力（他のテキストは含めない）

出力形式:
[
  {{"question": "問題文", "options": ["選択肢1", "選択肢2", "選択肢3", "選択肢4"], "answer": "選択肢1"}}
]"""

_MOCK_TRIVIA = [
    {
        "question": "雷雲接近時の最優先行動は？",
        "options": ["即座に下山", "樹木の下へ", "岩陰に隠れる", "テント設営"],
        "answer": "即座に下山",
    },
    {
        "question": "高山病予防で最も重要なのは？",
        "options": ["ゆっくり登る", "水分制限", "速く登る", "深呼吸しない"],
        "answer": "ゆっくり登る",
    },
    {
        "question": "本州の森林限界の目安は？",
        "options": ["2500m前後", "1000m前後", "3500m前後", "500m前後"],
        "answer": "2500m前後",
    },
    {
        "question": "道迷いに気付いた時の基本は？",
        "options": ["来た道を戻る", "沢を下る", "藪を進む", "走って探す"],
        "answer": "来た道を戻る",
    },
    {
        "question": "低体温症の初期症状は？",
        "options": ["震え", "発汗", "顔のほてり", "食欲増進"],
        "answer": "震え",
    },
    {
        "question": "登山計画書の提出先は？",
        "options": ["警察", "消防署", "郵便局", "役場の窓口のみ"],
        "answer": "警察",
    },
    {
        "question": "標高が100m上がると気温は？",
        "options": ["約0.6℃下がる", "約2℃下がる", "約1℃上がる", "変わらない"],
        "answer": "約0.6℃下がる",
    },
]


class LLMGenerationError(RuntimeError):
    """Raised when the LLM cannot produce usable content."""


@dataclass
class LLMConfig:
    """Configuration for LLM client."""
    api_base: str = "https://api.openai.com/v1"
    api_key: str = ""
    model_name: str = "gpt-4o-mini"
    temperature: float = 0.8
    max_tokens: int = 2000
    timeout: int = 30
    retry_attempts: int = 2
    mock_mode: bool = False
    retry_schedule: Optional[List[float]] = None

    @property
    def enabled(self) -> bool:
        return self.mock_mode or bool(self.api_key)

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Load configuration from environment variables."""
        mock_mode = os.getenv("LLM_MODE", "").lower() == "mock"
        schedule_env = os.getenv("LLM_RETRY_SCHEDULE")
        retry_schedule: Optional[List[float]] = None
        if schedule_env:
            try:
                retry_schedule = [float(item.strip()) for item in schedule_env.split(",") if item.strip()]
            except ValueError:
                logger.warning("Invalid LLM_RETRY_SCHEDULE value: %s", schedule_env)
                retry_schedule = None

        return cls(
            api_base=os.getenv("LLM_API_BASE", "https://api.openai.com/v1"),
            api_key=os.getenv("LLM_API_KEY", ""),
            model_name=os.getenv("LLM_MODEL_NAME", "gpt-4o-mini"),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.8")),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "2000")),
            timeout=int(os.getenv("LLM_TIMEOUT", "30")),
            retry_attempts=int(os.getenv("LLM_RETRY_ATTEMPTS", "2")),
            mock_mode=mock_mode,
            retry_schedule=retry_schedule,
        )


def extract_json_text(text: str) -> str:
    """Strip a markdown code fence if the model wrapped its JSON in one."""

    stripped = (text or "").strip()
    match = _CODE_FENCE.search(stripped)
    if match:
        return match.group(1)
    return stripped


def parse_trivia(text: str) -> List[TriviaItem]:
    """Parse a JSON array of trivia; malformed entries are dropped."""

    try:
        payload = json.loads(extract_json_text(text))
    except json.JSONDecodeError as exc:
        raise LLMGenerationError(f"trivia response is not JSON: {exc}") from exc
    if not isinstance(payload, list):
        raise LLMGenerationError("trivia response is not a JSON array")
    items: List[TriviaItem] = []
    for entry in payload:
        try:
            items.append(TriviaItem.from_payload(entry))
        except ValidationFailure as exc:
            logger.info("Discarding generated trivia: %s", exc)
    return items


class TriviaClient:
    """OpenAI-compatible client that generates mountaineering trivia."""

    def __init__(self, config: Optional[LLMConfig] = None, telemetry=None):
        self.config = config or LLMConfig.from_env()
        self._telemetry = telemetry
        self._executor = ThreadPoolExecutor(max_workers=2)
        self._retry_schedule = self.config.retry_schedule or [1.0, 3.0, 10.0]
        self.client = None

        if self.config.mock_mode:
            logger.info("Trivia client initialised in mock mode")
            return
        if not self.config.api_key:
            logger.info("LLM_API_KEY not set; trivia generation disabled")
            return
        self.client = openai.OpenAI(
            api_key=self.config.api_key,
            base_url=self.config.api_base,
            timeout=self.config.timeout,
        )
        logger.info("Trivia client initialized with base URL: %s", self.config.api_base)

    async def generate_trivia(self, count: int = 7) -> List[TriviaItem]:
        """Best-effort generation; any failure yields an empty list."""

        if count <= 0:
            return []
        if self.config.mock_mode:
            return parse_trivia(json.dumps(_MOCK_TRIVIA[:count], ensure_ascii=False))
        if self.client is None:
            return []

        started = time.perf_counter()
        error: Optional[str] = None
        items: List[TriviaItem] = []
        try:
            messages = [
                {"role": "system", "content": "You write multiple-choice mountaineering quizzes in Japanese."},
                {"role": "user", "content": TRIVIA_PROMPT.format(count=count)},
            ]
            response = await self._call_with_retry(messages)
            if response is None:
                raise LLMGenerationError("LLM call exhausted retries")
            items = parse_trivia(response.choices[0].message.content or "")
            logger.info("Generated %d usable trivia questions", len(items))
        except Exception as e:
            error = str(e)
            logger.error(f"Trivia generation failed: {e}")
        finally:
            if self._telemetry is not None:
                self._telemetry.track_llm_activity(
                    "trivia",
                    success=error is None,
                    duration_ms=(time.perf_counter() - started) * 1000,
                    error=error,
                )
        return items[:count]

    async def _call_with_retry(self, messages: List[Dict[str, str]]) -> Optional[Any]:
        """Make API call with retry logic."""
        attempts = max(1, self.config.retry_attempts)
        loop = asyncio.get_running_loop()
        for attempt in range(attempts):
            try:
                return await loop.run_in_executor(
                    self._executor,
                    lambda: self.client.chat.completions.create(
                        model=self.config.model_name,
                        messages=messages,
                        temperature=self.config.temperature,
                        max_tokens=self.config.max_tokens,
                    ),
                )
            except Exception as e:
                logger.warning(f"LLM API call attempt {attempt + 1} failed: {e}")
                if attempt < attempts - 1:
                    delay = self._retry_schedule[min(attempt, len(self._retry_schedule) - 1)]
                    await asyncio.sleep(delay)
                else:
                    logger.error("All retry attempts exhausted for LLM call")
        return None

    def close(self):
        """Clean up resources."""
        self._executor.shutdown(wait=True)


__all__ = ["LLMConfig", "LLMGenerationError", "TriviaClient", "extract_json_text", "parse_trivia"]
