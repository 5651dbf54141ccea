import logging
import sys

def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )

    # access log is too chatty next to the recommender logs
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    # torch prints its own warnings when a checkpoint is loaded on cpu
    logging.getLogger("torch").setLevel(logging.WARNING)
