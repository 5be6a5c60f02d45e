# statement_analyzer/llm.py
import asyncio
import json
import logging
from typing import Dict, Optional, Protocol

import httpx

from . import config
from .errors import ConfigurationError, ProviderError
from .extract import get_pages_text, pages_in_range
from .logic import parse_chunk_response
from .schema import Document, ExtractionJob, RawChunkResult, StagedDocument

logger = logging.getLogger("statement-analyzer.llm")

SYSTEM_INSTRUCTION = """
You are an expert financial data analyst specializing in Nigerian bank statements.
Extract EVERY single CREDIT (inflow/deposit) transaction from the provided pages.

CRITICAL RULES:
1. DOCUMENT VERIFICATION: First, determine if this document is actually a bank statement. If it is NOT a bank statement, return ONLY: {"isNotBankStatement": true}.
2. CREDIT IDENTIFICATION: Extract only transactions where money ENTERS the account (Inflow).
   - Look for columns like "Credit", "Money In", "Inflow", "CR", "Lodgments", "Deposit", "Pay In".
   - Discard any row that has a numerical value in the "Debit", "Withdrawal", "Outflow", "Pay Out" or "Money Out" column.
3. EXPLICIT DEBIT EXCLUSION: Nigerian bank charges are DEBITS. You MUST DISCARD rows matching these narrations unless they are explicitly marked as "REVERSAL":
   - VAT, SMS ALERT, TRANSFER FEE, MAINT FEE, CARD MAINT, ETM FEE, COMMISSION, STAMP DUTY, WHT, FGN STAMP DUTY, CBN ELECTRONICLEVY, ELECTRONICLEVY, NIP-FEE, NIP FEE.
4. BALANCE VERIFICATION: If a "Balance" column exists, a transaction is a credit ONLY if the ending balance is GREATER than the previous row's balance (within the context of these pages).
5. NO SUMMARIES: Ignore "Total Credits", "Balance Brought Forward", "Opening Balance", "Closing Balance", "Total Outflow", "B/F", "C/F", etc.
6. HEADERS: Column headers might only be present on the first page. Apply the same column structure to all subsequent pages.
7. DATA QUALITY: Capture the full description/narration. Format dates as DD/MM/YYYY. Use numbers for amounts and balance (remove currency symbols and commas).
8. OUTPUT FORMAT: Return valid JSON with the following structure, no prose and no code fences:
   {
     "isNotBankStatement": false,
     "accountName": "...", "accountNumber": "...", "bankName": "...",
     "transactions": [
       { "date": "DD/MM/YYYY", "description": "...", "amount": 1000.50, "balance": 5000.00 }
     ]
   }
"""

PROMPT_TEMPLATE = """
Pages to process: {start} to {end}.
Extract all credit transactions from these pages.
{header_instruction}
Return ONLY valid JSON in the specified format.
"""

HEADER_INSTRUCTION = "Also extract: accountName, accountNumber, and bankName from the header."
NO_HEADER_INSTRUCTION = "Focus only on transactions. Use empty strings for accountName, accountNumber, and bankName."


def build_prompt(job: ExtractionJob) -> str:
    return PROMPT_TEMPLATE.format(
        start=job.range.start,
        end=job.range.end,
        header_instruction=HEADER_INSTRUCTION if job.is_first else NO_HEADER_INSTRUCTION,
    )


def build_text_prompt(job: ExtractionJob, pages: Dict[int, str]) -> str:
    """Task prompt with the page text inlined, for models that cannot read PDFs."""
    pages_block = "\n\n".join(f"--- PAGE {i} ---\n{txt}" for i, txt in pages.items())
    return f"{build_prompt(job)}\nPAGES:\n{pages_block}\n"


def _raise_for_status(r: httpx.Response) -> None:
    if r.is_success:
        return
    try:
        detail = r.json().get("error", {})
        message = detail.get("message") or detail.get("status") or r.text
    except (ValueError, AttributeError):
        message = r.text
    raise ProviderError(r.status_code, message or r.reason_phrase)


class TextGenerationClient(Protocol):
    """What the pipeline needs from a text-generation service."""

    async def stage_document(self, document: Document) -> StagedDocument: ...

    async def generate(self, job: ExtractionJob, staged: StagedDocument) -> str: ...

    async def release(self, staged: StagedDocument) -> None: ...

    async def aclose(self) -> None: ...


class GeminiClient:
    """
    Gemini over its REST API. The PDF is uploaded once per run through the
    Files API and every chunk request references it by URI.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = config.GEMINI_PARSER_MODEL,
        base_url: str = config.GEMINI_BASE_URL,
        timeout: float = config.REQUEST_TIMEOUT_SECONDS,
        http: Optional[httpx.AsyncClient] = None,
        poll_interval: float = 2.0,
    ):
        self.api_key = api_key or config.GEMINI_API_KEY
        if not self.api_key:
            raise ConfigurationError("Gemini API key is missing.")
        self.model = model
        self.base_url = base_url.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._timeout = timeout
        self.poll_interval = poll_interval

    @property
    def _headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.api_key}

    async def stage_document(self, document: Document) -> StagedDocument:
        size = len(document.content)
        start = await self._http.post(
            f"{self.base_url}/upload/v1beta/files",
            headers={
                **self._headers,
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "start",
                "X-Goog-Upload-Header-Content-Length": str(size),
                "X-Goog-Upload-Header-Content-Type": "application/pdf",
            },
            json={"file": {"display_name": document.filename}},
        )
        _raise_for_status(start)
        upload_url = start.headers.get("x-goog-upload-url")
        if not upload_url:
            raise ProviderError(None, "AI file service did not return an upload URL")

        r = await self._http.post(
            upload_url,
            headers={
                "Content-Length": str(size),
                "X-Goog-Upload-Offset": "0",
                "X-Goog-Upload-Command": "upload, finalize",
            },
            content=document.content,
        )
        _raise_for_status(r)
        info = (r.json() or {}).get("file") or {}
        staged = StagedDocument(document=document, uri=info.get("uri"), remote_name=info.get("name"))
        if info.get("state") == "PROCESSING":
            try:
                await self._wait_until_active(staged)
            except BaseException:
                try:
                    await self.release(staged)
                except Exception:
                    logger.exception("Failed to release unusable upload %s", staged.remote_name)
                raise
        logger.info("Uploaded %s (%d bytes) as %s", document.filename, size, staged.remote_name)
        return staged

    async def _wait_until_active(self, staged: StagedDocument, attempts: int = 10) -> None:
        for _ in range(attempts):
            await asyncio.sleep(self.poll_interval)
            r = await self._http.get(f"{self.base_url}/v1beta/{staged.remote_name}", headers=self._headers)
            _raise_for_status(r)
            state = (r.json() or {}).get("state")
            if state == "ACTIVE":
                return
            if state == "FAILED":
                raise ProviderError(None, "AI file service could not process the document")
        raise ProviderError(504, "deadline exceeded waiting for uploaded document")

    async def generate(self, job: ExtractionJob, staged: StagedDocument) -> str:
        body = {
            "systemInstruction": {"parts": [{"text": SYSTEM_INSTRUCTION}]},
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"fileData": {"fileUri": staged.uri, "mimeType": "application/pdf"}},
                        {"text": build_prompt(job)},
                    ],
                }
            ],
            "generationConfig": {
                "temperature": config.TEMPERATURE,
                "responseMimeType": "application/json",
            },
        }
        r = await self._http.post(
            f"{self.base_url}/v1beta/models/{self.model}:generateContent",
            headers=self._headers,
            json=body,
            timeout=self._timeout,
        )
        _raise_for_status(r)
        data = r.json() or {}
        candidates = data.get("candidates") or []
        if not candidates:
            raise ProviderError(None, "No response from AI service")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts if isinstance(p, dict))

    async def release(self, staged: StagedDocument) -> None:
        if not staged.remote_name:
            return
        r = await self._http.delete(f"{self.base_url}/v1beta/{staged.remote_name}", headers=self._headers)
        if r.status_code != 404:
            _raise_for_status(r)

    async def aclose(self) -> None:
        await self._http.aclose()


class OllamaClient:
    """
    Local Ollama model. It cannot read PDFs, so the page text is extracted
    here (with OCR for scans) and each chunk's pages are inlined in the prompt.
    """

    def __init__(
        self,
        model: str = config.OLLAMA_MODEL,
        url: str = config.OLLAMA_URL,
        timeout: float = config.REQUEST_TIMEOUT_SECONDS,
        http: Optional[httpx.AsyncClient] = None,
        password: Optional[str] = None,
    ):
        self.model = model
        self.url = url
        self.password = password
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def stage_document(self, document: Document) -> StagedDocument:
        pages_text = await asyncio.to_thread(get_pages_text, document.content, self.password)
        return StagedDocument(document=document, pages_text=pages_text)

    async def generate(self, job: ExtractionJob, staged: StagedDocument) -> str:
        """
        Calls Ollama /api/chat and returns plain text content.
        Works with both {"message":{"content":...}} and {"response":...} payloads.
        """
        options = {"temperature": 0}
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_INSTRUCTION},
                {"role": "user", "content": build_text_prompt(job, pages_in_range(staged.pages_text, job.range))},
            ],
            "stream": False,
            "options": options,
        }
        if config.JSON_FORMAT_OPTION:
            payload["format"] = "json"
        r = await self._http.post(self.url, json=payload)
        if not r.is_success:
            raise ProviderError(r.status_code, r.text or r.reason_phrase)
        data = r.json() or {}
        if isinstance(data, dict):
            message = data.get("message")
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                return message["content"]
            if isinstance(data.get("response"), str):
                return data["response"]
        return json.dumps(data)

    async def release(self, staged: StagedDocument) -> None:
        return None

    async def aclose(self) -> None:
        await self._http.aclose()


def make_client(backend: Optional[str] = None) -> TextGenerationClient:
    backend = (backend or config.LLM_BACKEND).lower()
    if backend == "ollama":
        return OllamaClient()
    if backend == "gemini":
        return GeminiClient()
    raise ConfigurationError(f"Unknown LLM backend: {backend}")


async def extract_chunk(client: TextGenerationClient, job: ExtractionJob, staged: StagedDocument) -> RawChunkResult:
    """One extraction attempt for one page range."""
    text = await client.generate(job, staged)
    return parse_chunk_response(text)
