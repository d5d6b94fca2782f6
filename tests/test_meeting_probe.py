from unittest.mock import MagicMock, patch

import httpx

from tutorhub.services.meeting_probe import (
    CONFIDENCE_HIGH,
    CONFIDENCE_MEDIUM,
    HttpReachabilityProbe,
    derive_confidence,
)


URL = 'https://meet.example.com/abc-defg-hij'


def test_reachable_room_is_medium_confidence():
    probe = HttpReachabilityProbe(timeout=2.0, user_agent='probe-test')
    with patch('tutorhub.services.meeting_probe.httpx.head', return_value=MagicMock(status_code=200)) as head:
        status = probe.check(URL)
    assert status.is_accessible
    assert status.confidence == CONFIDENCE_MEDIUM
    assert status.status_code == 200
    head.assert_called_once_with(URL, headers={'User-Agent': 'probe-test'}, timeout=2.0, follow_redirects=True)


def test_non_200_is_inaccessible_with_high_confidence():
    with patch('tutorhub.services.meeting_probe.httpx.head', return_value=MagicMock(status_code=404)):
        status = HttpReachabilityProbe().check(URL)
    assert not status.is_accessible
    assert status.confidence == CONFIDENCE_HIGH
    assert not status.probe_failed


def test_network_error_is_reported_as_failed_probe():
    with patch('tutorhub.services.meeting_probe.httpx.head', side_effect=httpx.ConnectTimeout('timed out')):
        status = HttpReachabilityProbe().check(URL)
    assert not status.is_accessible
    assert status.probe_failed
    assert status.status_code is None


def test_confidence_table():
    assert derive_confidence(False, False) == CONFIDENCE_HIGH
    assert derive_confidence(True, True) == CONFIDENCE_HIGH
    assert derive_confidence(True, False) == CONFIDENCE_MEDIUM
