#!/usr/bin/env python3
"""
LLM Gateway Client
Sends prompts (optionally with an embedded iris image) to an OpenAI-compatible
chat-completions endpoint or to Gemini, and returns the raw text answer.
"""

import argparse
import asyncio
import base64
import time

import requests

from irisv9.config import get_api_key, load_config

# Default configurations
DEFAULT_API_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_MODEL = "gpt-4o"
GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

SYSTEM_PROMPT = "You are an iris image analysis assistant. Follow the output format exactly."

RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


class LLMGatewayError(Exception):
    """Transport-level failure talking to the model endpoint."""

    def __init__(self, message, status_code=None, retryable=True):
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


def split_data_url(data_url):
    """Split 'data:image/jpeg;base64,....' into (mime_type, base64_payload)"""
    header, _, payload = data_url.partition(",")
    mime_type = header[len("data:"):].split(";")[0] or "image/jpeg"
    return mime_type, payload


def encode_image_to_data_url(image_path):
    """Read an image file into a base64 data URL"""
    with open(image_path, "rb") as image_file:
        encoded = base64.b64encode(image_file.read()).decode('utf-8')
    suffix = image_path.lower().rsplit(".", 1)[-1]
    mime_type = "image/png" if suffix == "png" else "image/jpeg"
    return f"data:{mime_type};base64,{encoded}"


def build_openai_payload(prompt, model, json_mode, image_data_url=None, max_tokens=4096, temperature=0.1):
    user_content = prompt
    if image_data_url:
        user_content = [
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": image_data_url}}
        ]

    payload = {
        "model": model,
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": user_content}
        ],
        "max_tokens": max_tokens,
        "temperature": temperature
    }
    if json_mode:
        payload["response_format"] = {"type": "json_object"}
    return payload


def build_gemini_payload(prompt, json_mode, image_data_url=None, max_tokens=4096, temperature=0.1):
    parts = [{"text": prompt}]
    if image_data_url:
        mime_type, data = split_data_url(image_data_url)
        parts.append({"inline_data": {"mime_type": mime_type, "data": data}})

    generation_config = {"temperature": temperature, "maxOutputTokens": max_tokens}
    if json_mode:
        generation_config["responseMimeType"] = "application/json"

    return {
        "systemInstruction": {"parts": [{"text": SYSTEM_PROMPT}]},
        "contents": [{"role": "user", "parts": parts}],
        "generationConfig": generation_config
    }


def _extract_text(provider, result):
    try:
        if provider == "gemini":
            return result["candidates"][0]["content"]["parts"][0]["text"]
        return result["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        raise LLMGatewayError(f"Unexpected response format: {str(result)[:200]}", retryable=True)


def query_llm(prompt, image_data_url=None, json_mode=False, provider="openai",
              api_url=DEFAULT_API_URL, model=DEFAULT_MODEL, api_key=None,
              max_tokens=4096, temperature=0.1, timeout=120):
    """
    Send a single request to the model endpoint.

    Returns:
        The model's text answer.

    Raises:
        LLMGatewayError: on network failures, HTTP errors or empty/malformed
            responses. retryable is False for client errors other than 408/429.
    """
    headers = {"Content-Type": "application/json"}
    params = None

    if provider == "gemini":
        url = api_url if "{model}" not in api_url else api_url.format(model=model)
        payload = build_gemini_payload(prompt, json_mode, image_data_url, max_tokens, temperature)
        params = {"key": api_key} if api_key else None
    else:
        url = api_url
        payload = build_openai_payload(prompt, model, json_mode, image_data_url, max_tokens, temperature)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

    try:
        response = requests.post(url, headers=headers, params=params, json=payload, timeout=timeout)
    except requests.exceptions.RequestException as e:
        raise LLMGatewayError(f"API request failed - {e}", retryable=True) from e

    if response.status_code >= 400:
        retryable = response.status_code in RETRYABLE_STATUS
        raise LLMGatewayError(
            f"API returned HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
            retryable=retryable,
        )

    try:
        result = response.json()
    except ValueError as e:
        raise LLMGatewayError(f"API returned a non-JSON body: {e}", retryable=True) from e

    answer = _extract_text(provider, result)
    if not answer or not answer.strip():
        raise LLMGatewayError("Empty response from LLM", retryable=True)
    return answer


class RateLimiter:
    """Keeps at least `min_interval` seconds between consecutive requests."""

    def __init__(self, min_interval=0.0):
        self.min_interval = min_interval
        self._lock = None
        self._loop = None
        self._last_request = None

    def _get_lock(self):
        # Created inside the running loop; a gateway may outlive several asyncio.run calls
        loop = asyncio.get_running_loop()
        if self._lock is None or self._loop is not loop:
            self._lock = asyncio.Lock()
            self._loop = loop
        return self._lock

    async def wait(self):
        async with self._get_lock():
            if self._last_request is not None and self.min_interval > 0:
                elapsed = time.monotonic() - self._last_request
                if elapsed < self.min_interval:
                    await asyncio.sleep(self.min_interval - elapsed)
            self._last_request = time.monotonic()


class LLMGateway:
    """
    Async callable with the pipeline's call_llm signature:

        await gateway(prompt, json_mode, retries, image_data=None) -> str

    Transient failures are retried up to `retries` times with exponential
    backoff; all requests share one inter-request delay.
    """

    def __init__(self, provider="openai", api_url=DEFAULT_API_URL, model=DEFAULT_MODEL,
                 api_key=None, max_tokens=4096, temperature=0.1, timeout=120,
                 request_delay=0.0, retry_backoff=2.0):
        self.provider = provider
        self.api_url = api_url
        self.model = model
        self.api_key = api_key
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.retry_backoff = retry_backoff
        self.rate_limiter = RateLimiter(request_delay)
        self.request_count = 0

    @classmethod
    def from_config(cls, config):
        model_cfg = config['model']
        pipeline_cfg = config['pipeline']
        return cls(
            provider=model_cfg['provider'],
            api_url=model_cfg['api_url'],
            model=model_cfg['name'],
            api_key=get_api_key(model_cfg['provider']),
            max_tokens=model_cfg['max_tokens'],
            temperature=model_cfg['temperature'],
            timeout=model_cfg['timeout'],
            request_delay=pipeline_cfg['request_delay'],
            retry_backoff=pipeline_cfg['retry_backoff'],
        )

    async def __call__(self, prompt, json_mode=True, retries=2, image_data=None):
        attempts = max(0, retries) + 1
        for attempt in range(1, attempts + 1):
            await self.rate_limiter.wait()
            self.request_count += 1
            try:
                return await asyncio.to_thread(
                    query_llm,
                    prompt,
                    image_data_url=image_data,
                    json_mode=json_mode,
                    provider=self.provider,
                    api_url=self.api_url,
                    model=self.model,
                    api_key=self.api_key,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                    timeout=self.timeout,
                )
            except LLMGatewayError as e:
                if not e.retryable or attempt == attempts:
                    raise
                wait_time = self.retry_backoff * (2 ** (attempt - 1))
                print(f"LLM request failed ({e}); retry {attempt}/{attempts - 1} in {wait_time:.1f}s")
                if wait_time > 0:
                    await asyncio.sleep(wait_time)


def check_server_status(api_url=DEFAULT_API_URL, timeout=5):
    """Check if an OpenAI-compatible server (e.g. LM Studio) answers on /v1/models"""
    try:
        response = requests.get(api_url.replace("/v1/chat/completions", "/v1/models"), timeout=timeout)
    except requests.exceptions.RequestException:
        return False
    return response.status_code == 200


def main():
    parser = argparse.ArgumentParser(description="Send one prompt to the configured LLM endpoint")
    parser.add_argument("--prompt", type=str, required=True, help="Prompt to send to the model")
    parser.add_argument("--image", type=str, help="Optional path to an image file")
    parser.add_argument("--json", action="store_true", help="Request JSON-only output")
    args = parser.parse_args()

    config = load_config()
    gateway = LLMGateway.from_config(config)
    image_data = encode_image_to_data_url(args.image) if args.image else None

    try:
        answer = asyncio.run(gateway(args.prompt, args.json, config['pipeline']['retries'], image_data))
    except LLMGatewayError as e:
        print(f"Error: {e}")
        return

    print("\n--- Model Response ---")
    print(answer)


if __name__ == "__main__":
    main()
