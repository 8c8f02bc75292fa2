import logging, json, sys, time, os


def get_logger(name="medkey", level=None, to_file=None):
    """Unified structured logger for all medkey components."""
    logger = logging.getLogger(name)
    if level is None:
        level = os.getenv("MEDKEY_LOG_LEVEL", "INFO").upper()
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter(
            fmt=json.dumps({
                "ts": "%(asctime)s",
                "level": "%(levelname)s",
                "name": "%(name)s",
                "msg": "%(message)s"
            }),
            datefmt="%Y-%m-%dT%H:%M:%SZ",
        )
        formatter.converter = time.gmtime  # Use UTC timestamps
        handler.setFormatter(formatter)
        logger.addHandler(handler)

        if to_file:
            # Ensure the directory exists before writing
            os.makedirs(os.path.dirname(to_file) or ".", exist_ok=True)
            file_handler = logging.FileHandler(to_file)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger


def log_event(logger, event: str, level=logging.INFO, **fields):
    """
    Emit one protocol event as a flat key/value record.

    Callers pass identities, document ids and fingerprints only; never
    key material or content keys.
    """
    record = {"event": event}
    record.update({k: v for k, v in fields.items() if v is not None})
    logger.log(level, json.dumps(record, separators=(",", ":"), sort_keys=True))
