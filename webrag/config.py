from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Chat endpoint (OpenAI-compatible: LM Studio, Ollama, OpenRouter, ...)
    chat_api_base: str = "http://localhost:1234/v1"
    chat_api_key: str = ""
    chat_model: str = ""

    # Search (serper.dev)
    serper_api_key: str = ""
    serper_base_url: str = "https://google.serper.dev/search"
    search_timeout_seconds: float = 60.0
    search_result_count: int = 10

    # Scraping
    scraping_mode: str = "local"  # local | reader
    jina_api_key: str = ""
    jina_reader_url: str = "https://r.jina.ai/"
    reader_timeout_seconds: float = 90.0
    local_render_max_concurrent: int = 3
    render_navigation_timeout_seconds: float = 30.0
    render_settle_timeout_seconds: float = 12.0
    render_settle_interval_seconds: float = 0.5
    render_settle_samples: int = 3
    render_settle_tolerance: float = 0.02
    render_scroll_step_px: int = 800
    render_scroll_pause_seconds: float = 0.15
    render_viewport_width: int = 1280
    render_page_height: int = 1600

    # Pipeline budgets
    max_queries: int = 4
    max_organic_per_query: int = 10
    max_total_results: int = 40
    max_refinement_rounds: int = 3
    max_scrape_per_round: int = 3
    max_additional_queries: int = 2
    context_max_bytes: int = 120_000
    final_context_ceiling_bytes: int = 250_000
    final_scraped_max_chars: int = 2000

    # RAG
    rag_trigger_tokens: int = 3000
    rag_chars_per_token: int = 4
    rag_chunk_tokens: int = 350
    rag_overlap_ratio: float = 0.15
    rag_top_k: int = 3
    rag_language_sample_chars: int = 20_000
    rag_translate_min_confidence: float = 0.60

    # Embeddings
    embedding_model_en: str = "BAAI/bge-small-en-v1.5"
    embedding_model_multilingual: str = (
        "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"
    )
    embedding_languages: str = (
        "en,it,es,fr,de,pt,ru,tr,nl,pl,uk,cs,sk,ro,hu,sv,no,da,fi,el,bg,"
        "hr,sr,sl,he,ar,fa,ur,hi,bn,ta,te,th,vi,id,ms,ko,ja,zh"
    )
    embedding_batch_size: int = 32

    # App
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def embedding_language_list(self) -> list[str]:
        return [code.strip().lower() for code in self.embedding_languages.split(",") if code.strip()]

    @property
    def rag_trigger_chars(self) -> int:
        return self.rag_trigger_tokens * self.rag_chars_per_token

    @property
    def rag_chunk_chars(self) -> int:
        return self.rag_chunk_tokens * self.rag_chars_per_token


settings = Settings()
