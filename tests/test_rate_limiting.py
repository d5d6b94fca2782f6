import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from tutorhub.db import Base
from tutorhub.errors import RateLimitedError
from tutorhub.services.rate_limit_service import check_rate_limit, enforce_rate_limit


def test_rate_limit_blocks_after_threshold_and_resets():
    tmpdir = tempfile.TemporaryDirectory()
    try:
        db_path = Path(tmpdir.name) / 'test_rate_limit.db'
        engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        Base.metadata.create_all(bind=engine)
        db = Session()
        try:
            base = datetime(2024, 1, 1, 12, 0, 0)
            with patch('tutorhub.services.rate_limit_service.default_time_provider.now', return_value=base):
                for _ in range(10):
                    assert check_rate_limit(
                        db,
                        identifier='user:42',
                        category='booking',
                        max_requests=10,
                        window_seconds=60,
                    ).allowed

            with patch(
                'tutorhub.services.rate_limit_service.default_time_provider.now',
                return_value=base + timedelta(seconds=20),
            ):
                decision = check_rate_limit(
                    db,
                    identifier='user:42',
                    category='booking',
                    max_requests=10,
                    window_seconds=60,
                )
                assert not decision.allowed
                assert decision.retry_after_seconds == 40

                other_category = check_rate_limit(
                    db,
                    identifier='user:42',
                    category='class_actions',
                    max_requests=10,
                    window_seconds=60,
                )
                assert other_category.allowed

            with patch(
                'tutorhub.services.rate_limit_service.default_time_provider.now',
                return_value=base + timedelta(seconds=61),
            ):
                assert check_rate_limit(
                    db,
                    identifier='user:42',
                    category='booking',
                    max_requests=10,
                    window_seconds=60,
                ).allowed
        finally:
            db.close()
            engine.dispose()
    finally:
        tmpdir.cleanup()


def test_enforce_rate_limit_raises_with_retry_after():
    tmpdir = tempfile.TemporaryDirectory()
    try:
        db_path = Path(tmpdir.name) / 'test_enforce_rate_limit.db'
        engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        Base.metadata.create_all(bind=engine)
        db = Session()
        try:
            base = datetime(2024, 1, 1, 12, 0, 0)
            with patch('tutorhub.services.rate_limit_service.default_time_provider.now', return_value=base):
                enforce_rate_limit(db, identifier='user:7', category='class_actions', max_requests=1)
                with pytest.raises(RateLimitedError) as exc_info:
                    enforce_rate_limit(db, identifier='user:7', category='class_actions', max_requests=1)
            assert exc_info.value.status_code == 429
            assert exc_info.value.detail['retry_after_seconds'] == 60
        finally:
            db.close()
            engine.dispose()
    finally:
        tmpdir.cleanup()
