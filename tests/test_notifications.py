import unittest
from unittest.mock import MagicMock, patch

import httpx

from tutorhub.services import notification_service


WEBHOOK = 'https://hooks.example.com/tutorhub'


class NotificationTests(unittest.TestCase):
    def test_missing_webhook_skips_delivery(self):
        with patch('tutorhub.services.notification_service.settings.notification_webhook_url', ''), patch(
            'tutorhub.services.notification_service.httpx.post'
        ) as post:
            self.assertFalse(notification_service.send_class_reminder(5, 60))
        post.assert_not_called()

    def test_event_is_posted_as_json(self):
        response = MagicMock(status_code=204)
        with patch('tutorhub.services.notification_service.settings.notification_webhook_url', WEBHOOK), patch(
            'tutorhub.services.notification_service.httpx.post', return_value=response
        ) as post:
            delivered = notification_service.send_booking_confirmation(7, student_id=20, teacher_id=10)

        self.assertTrue(delivered)
        args, kwargs = post.call_args
        self.assertEqual(args[0], WEBHOOK)
        self.assertEqual(
            kwargs['json'],
            {'event': 'booking.confirmed', 'payload': {'slot_id': 7, 'student_id': 20, 'teacher_id': 10}},
        )

    def test_rejected_or_failed_delivery_returns_false(self):
        with patch('tutorhub.services.notification_service.settings.notification_webhook_url', WEBHOOK):
            with patch('tutorhub.services.notification_service.httpx.post', return_value=MagicMock(status_code=500)):
                self.assertFalse(notification_service.send_waitlist_notification(3, student_id=20, teacher_id=10))
            with patch(
                'tutorhub.services.notification_service.httpx.post',
                side_effect=httpx.ConnectError('refused'),
            ):
                self.assertFalse(notification_service.send_booking_cancellation(7, student_id=20, teacher_id=10))


if __name__ == '__main__':
    unittest.main()
