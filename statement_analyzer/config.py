import os

# Which text-generation backend to use: "gemini" (native PDF) or "ollama" (page text)
LLM_BACKEND = os.getenv("LLM_BACKEND", "gemini")

# Gemini (Generative Language REST API)
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_GEMINI_API_KEY")
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com")
GEMINI_PARSER_MODEL = os.getenv("GEMINI_PARSER_MODEL", "gemini-2.5-flash")

# Ollama HTTP endpoint
OLLAMA_URL = os.getenv("OLLAMA_URL", "http://localhost:11434/api/chat")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "mistral:7b-instruct")

# Some models honor this and will emit strict JSON
JSON_FORMAT_OPTION = True
TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.1"))

# PDF extraction can be slow; 504 means the provider hit its own deadline
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "180"))

# Pages sent per extraction call and simultaneous outbound calls
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "2"))
CONCURRENCY_LIMIT = int(os.getenv("CONCURRENCY_LIMIT", "2"))

# Retries after the first attempt; backoff is attempt * RETRY_BACKOFF_SECONDS
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "3"))
RETRY_BACKOFF_SECONDS = float(os.getenv("RETRY_BACKOFF_SECONDS", "4"))

# Upload staging
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
BLOB_DIR = os.getenv("BLOB_DIR", os.path.join(os.getcwd(), ".blobs"))
BLOB_BASE_URL = os.getenv("BLOB_BASE_URL", "http://localhost:8000/api/blobs")
BLOB_TOKEN = os.getenv("BLOB_TOKEN") or os.getenv("STATEMENT_READ_WRITE_TOKEN")
