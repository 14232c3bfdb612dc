"""
Unit tests for logging setup (bk/__init__.py).
"""

import logging
from logging.handlers import RotatingFileHandler

import pytest

from bk import configure_logging


@pytest.fixture
def root_logger():
    """Restore root logger handlers and level after the test."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


class TestConfigureLogging:
    """Test configure_logging."""

    def test_console_only(self, root_logger):
        configure_logging('debug')

        assert root_logger.level == logging.DEBUG
        assert len(root_logger.handlers) == 1
        assert not isinstance(root_logger.handlers[0], RotatingFileHandler)

    def test_rotating_file(self, root_logger, tmp_path):
        log_dir = tmp_path / 'logs'

        configure_logging(logging.WARNING, str(log_dir))

        file_handlers = [h for h in root_logger.handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert file_handlers[0].baseFilename == str(log_dir / 'bk.log')
        assert file_handlers[0].maxBytes == 10485760
        assert file_handlers[0].backupCount == 10

        logging.getLogger('bk.test').warning('written to file')
        file_handlers[0].flush()
        assert 'written to file' in (log_dir / 'bk.log').read_text()

    def test_unknown_level(self, root_logger):
        with pytest.raises(ValueError, match='Unknown log level'):
            configure_logging('chatty')
