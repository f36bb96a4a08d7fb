import logging

from rich.logging import RichHandler


def setup_logging(level: int = logging.INFO) -> None:
    """Route page file logging to a rich console handler"""
    logging.basicConfig(
        level=level,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
