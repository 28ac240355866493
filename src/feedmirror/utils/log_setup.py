"""日志配置 - 有界队列，慢速日志输出不阻塞同步主流程."""

import logging
import queue
from logging.handlers import QueueHandler, QueueListener

_listener: QueueListener | None = None

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class DroppingQueueHandler(QueueHandler):
    """队列满时丢弃日志记录并计数，而不是阻塞调用方."""

    def __init__(self, log_queue: "queue.Queue[logging.LogRecord]") -> None:
        super().__init__(log_queue)
        self.dropped = 0

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1


def configure_logging(level: str = "INFO", queue_size: int = 10000) -> DroppingQueueHandler:
    """配置根日志：QueueHandler -> 有界队列 -> QueueListener -> stderr."""
    global _listener

    if _listener is not None:
        _listener.stop()

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=queue_size)
    handler = DroppingQueueHandler(log_queue)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        if isinstance(existing, QueueHandler):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())

    _listener = QueueListener(log_queue, stream_handler, respect_handler_level=True)
    _listener.start()
    return handler


def shutdown_logging() -> None:
    """停止后台日志线程，刷出剩余记录."""
    global _listener
    if _listener is not None:
        _listener.stop()
        _listener = None
