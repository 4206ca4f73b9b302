from __future__ import annotations

import argparse
import logging

from voiceqa.internal_core.config import load_config

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the voiceqa HTTP/websocket service.")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=3000, help="Bind port (default: 3000)")
    parser.add_argument("--reload", action="store_true", help="Restart on code changes.")
    args = parser.parse_args()

    cfg = load_config()
    level = getattr(logging, cfg.VOICEQA_LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger(__name__).info(
        "Starting voiceqa (asr=%s llm=%s audio_dir=%s)",
        cfg.VOICEQA_ASR_PROVIDER,
        cfg.VOICEQA_LLM_BACKEND,
        cfg.audio_dir_path(),
    )

    import uvicorn

    uvicorn.run(
        "voiceqa.api.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=cfg.VOICEQA_LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
