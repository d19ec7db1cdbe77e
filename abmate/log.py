import logging, os, sys

def setup_logger(run_id: str, log_dir: str = "logs", level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger("abmate")
    if logger.handlers:
        return logger
    logger.setLevel(level)
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, f"abmate_{run_id}.log")
    fmt = logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s")
    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(fmt)
    sh = logging.StreamHandler(sys.stdout)
    sh.setFormatter(fmt)
    logger.addHandler(fh)
    logger.addHandler(sh)
    return logger
