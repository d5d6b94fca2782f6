from contextlib import contextmanager
from unittest.mock import MagicMock, patch

from tutorhub import scheduler


@contextmanager
def _fake_scope(label):
    yield MagicMock(name=f'session[{label}]')


def test_job_failure_does_not_escape_scheduler_thread():
    with patch('tutorhub.scheduler.session_scope', _fake_scope), patch(
        'tutorhub.scheduler.run_auto_detection', side_effect=RuntimeError('probe storm')
    ) as run:
        scheduler.auto_detection_job()
    run.assert_called_once()


def test_jobs_receive_a_session():
    with patch('tutorhub.scheduler.session_scope', _fake_scope), patch(
        'tutorhub.scheduler.expire_waitlist_entries', return_value=2
    ) as expire, patch('tutorhub.scheduler.send_due_class_reminders', return_value={'due': 0, 'sent': 0}) as remind:
        scheduler.waitlist_expiry_job()
        scheduler.class_reminders_job()
    assert expire.call_count == 1
    assert remind.call_count == 1
    assert isinstance(expire.call_args.args[0], MagicMock)


def test_start_registers_jobs_once():
    fake = MagicMock(running=False)
    with patch('tutorhub.scheduler.scheduler', fake):
        scheduler.start_scheduler()
    job_ids = [call.kwargs['id'] for call in fake.add_job.call_args_list]
    assert job_ids == ['auto_detection', 'waitlist_expiry', 'class_reminders']
    fake.start.assert_called_once()
