"""Gemini Provider 适配器。

本模块负责：

1. 持有进程内唯一的 httpx.AsyncClient，被所有会话复用。
2. 将 ChatSession 的历史 + 本轮输入转换为 generateContent 请求：
   - URL: {base_url}/models/{model}:generateContent
   - 认证: x-goog-api-key: <api_key>
3. 调用 HTTP 接口并处理网络/API 异常（不做重试，交给上层决定）。
4. 将响应 JSON 解析为统一的 GenerateResult 结构。

会话历史只在 send 成功后推进：失败的轮次不会进入历史。
"""

from typing import Any, Dict, List, Optional, Sequence

import httpx

from meshchat_core.config.settings import settings
from meshchat_core.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from meshchat_core.domain.models import (
    Candidate,
    Content,
    GenerateResult,
    Part,
    UsageMetadata,
)
from meshchat_core.providers.registry import GEMINI_CONFIG, ModelConfig


class GeminiClient:
    """Gemini 后端客户端实现。

    - name: Provider 名称（供日志/调试使用）。
    - create_session: 创建一个带系统指令和种子历史的会话。
    """

    name = "gemini"

    def __init__(self, cfg=settings):
        self._settings = cfg
        self._client: Optional[httpx.AsyncClient] = None

    async def create_session(
        self,
        model: str,
        system_instruction: Optional[str] = None,
        history: Optional[Sequence[Content]] = None,
    ) -> "GeminiChatSession":
        if not getattr(self._settings, "gemini_api_key", None):
            raise ValidationError(code="MISSING_API_KEY", message="GEMINI_API_KEY not set")
        seed = list(history or [])
        for turn in seed:
            if turn.role not in ("user", "model"):
                raise ValidationError(
                    code="INVALID_HISTORY",
                    message=f"Unsupported role in history: {turn.role!r}",
                )
        return GeminiChatSession(
            client=self,
            model_cfg=GEMINI_CONFIG.resolve(model),
            system_instruction=system_instruction or None,
            history=seed,
        )

    async def generate(
        self,
        model_cfg: ModelConfig,
        contents: Sequence[Content],
        system_instruction: Optional[str] = None,
    ) -> GenerateResult:
        """执行一次 generateContent 调用。"""

        payload = self._build_payload(model_cfg, contents, system_instruction)
        base = getattr(self._settings, "gemini_base_url", None) or GEMINI_CONFIG.base_url
        try:
            resp = await self._http().post(
                f"{base}/models/{model_cfg.provider_model}:generateContent",
                json=payload,
                headers={
                    "x-goog-api-key": self._settings.gemini_api_key,
                    "Content-Type": "application/json",
                },
            )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="Gemini rate limit", http_status=429)
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        return self._parse_response(resp.json(), model_cfg)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ---- 辅助方法 ----

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False)
        return self._client

    def _build_payload(
        self,
        model_cfg: ModelConfig,
        contents: Sequence[Content],
        system_instruction: Optional[str],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "contents": [self._content_to_payload(c) for c in contents],
        }
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        generation_config: Dict[str, Any] = {}
        if model_cfg.default_temperature is not None:
            generation_config["temperature"] = model_cfg.default_temperature
        if model_cfg.max_output_tokens is not None:
            generation_config["maxOutputTokens"] = model_cfg.max_output_tokens
        if generation_config:
            payload["generationConfig"] = generation_config
        return payload

    @staticmethod
    def _content_to_payload(content: Content) -> Dict[str, Any]:
        return {"role": content.role, "parts": [{"text": p.text} for p in content.parts]}

    def _parse_response(self, data: dict, model_cfg: ModelConfig) -> GenerateResult:
        candidates: List[Candidate] = []
        for cand in data.get("candidates") or []:
            content_raw = cand.get("content")
            content = None
            if content_raw is not None:
                parts = [Part(text=p.get("text") or "") for p in content_raw.get("parts") or []]
                content = Content(role=content_raw.get("role") or "model", parts=parts)
            candidates.append(Candidate(content=content, finish_reason=cand.get("finishReason")))
        usage_raw = data.get("usageMetadata") or {}
        usage = None
        if usage_raw:
            usage = UsageMetadata(
                prompt_tokens=usage_raw.get("promptTokenCount", 0),
                completion_tokens=usage_raw.get("candidatesTokenCount", 0),
                total_tokens=usage_raw.get("totalTokenCount", 0),
            )
        return GenerateResult(
            model=data.get("modelVersion") or model_cfg.provider_model,
            candidates=candidates,
            usage=usage,
            raw=data,
        )


class GeminiChatSession:
    """一个 Gemini 多轮会话。

    comprehensive 历史记录每一轮成功请求的输入与输出；
    curated 历史会剔除模型输出无效（为空）的轮次及其对应的用户输入。
    """

    def __init__(
        self,
        client: GeminiClient,
        model_cfg: ModelConfig,
        system_instruction: Optional[str],
        history: List[Content],
    ):
        self._client = client
        self._model_cfg = model_cfg
        self._system_instruction = system_instruction
        self._history = history

    @property
    def model(self) -> str:
        return self._model_cfg.logical_name

    async def send(self, parts: Sequence[Part]) -> GenerateResult:
        user_turn = Content(role="user", parts=list(parts))
        contents = self.history(curated=True) + [user_turn]
        result = await self._client.generate(self._model_cfg, contents, self._system_instruction)
        self._history.append(user_turn)
        if result.candidates and result.candidates[0].content is not None:
            self._history.append(result.candidates[0].content)
        else:
            self._history.append(Content(role="model", parts=[]))
        return result

    def history(self, curated: bool = True) -> List[Content]:
        if not curated:
            return list(self._history)
        return _curate(self._history)


def _is_valid_turn(content: Content) -> bool:
    if not content.parts:
        return False
    return any(p.text for p in content.parts)


def _curate(history: Sequence[Content]) -> List[Content]:
    curated: List[Content] = []
    i = 0
    while i < len(history):
        if history[i].role == "user":
            curated.append(history[i])
            i += 1
            continue
        model_output: List[Content] = []
        valid = True
        while i < len(history) and history[i].role == "model":
            model_output.append(history[i])
            if valid and not _is_valid_turn(history[i]):
                valid = False
            i += 1
        if valid:
            curated.extend(model_output)
        elif curated:
            # 丢弃对应的用户输入
            curated.pop()
    return curated
