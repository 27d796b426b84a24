import logging

from pagecache.logging_config import configure_logging, NOISY_LOGGERS


def test_configure_logging_sets_package_level_and_quiets_libraries():
    logger = configure_logging("DEBUG")
    assert logger.name == "pagecache"
    assert logger.level == logging.DEBUG
    for name in NOISY_LOGGERS:
        assert logging.getLogger(name).level == logging.WARNING
