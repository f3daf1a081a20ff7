import logging

import pytest


@pytest.fixture(autouse=True)
def reset_loggers():
    yield
    for name in ("compose_scaffold", "compose_fetch", "merge_config"):
        scaffold_logger = logging.getLogger(name)
        for handler in scaffold_logger.handlers:
            handler.close()
        scaffold_logger.handlers = []
        scaffold_logger.propagate = True
