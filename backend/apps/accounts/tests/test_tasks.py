# FILE: /backend/apps/accounts/tests/test_tasks.py
from django.test import TestCase
from django.core import mail
from unittest.mock import patch
from backend.apps.accounts.tasks import send_password_reset_email, send_welcome_email
from tests.factories import UserFactory


class TasksTestCase(TestCase):

    def setUp(self):
        self.user = UserFactory(email='test@example.com', name='Test User', referral_code='TEST1234')

    def test_send_welcome_email(self):
        """Welcome email renders the library name and referral code."""
        result = send_welcome_email(str(self.user.id))

        self.assertEqual(result['status'], 'success')
        self.assertIn('test@example.com', result['message'])
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ['test@example.com'])
        self.assertIn('TEST1234', mail.outbox[0].body)

    def test_send_welcome_email_skips_inactive(self):
        self.user.is_active = False
        self.user.save()

        result = send_welcome_email(str(self.user.id))

        self.assertEqual(result['status'], 'skipped')
        self.assertEqual(len(mail.outbox), 0)

    @patch('backend.apps.accounts.tasks.send_reset_notification')
    def test_send_password_reset_email(self, mock_send):
        """Reset link points at the frontend with the token."""
        mock_send.return_value = {'success': True, 'error': None}

        result = send_password_reset_email(str(self.user.id), 'abc/token-123')

        self.assertEqual(result['status'], 'success')
        email, name, reset_url = mock_send.call_args.args
        self.assertEqual(email, 'test@example.com')
        self.assertEqual(name, 'Test User')
        self.assertTrue(reset_url.endswith('/reset-password/abc/token-123'))

    @patch('backend.apps.accounts.tasks.send_reset_notification')
    def test_send_failure_is_reported(self, mock_send):
        mock_send.return_value = {'success': False, 'error': 'SMTP down'}
        result = send_password_reset_email(str(self.user.id), 'tok')
        self.assertEqual(result, {'status': 'error', 'message': 'SMTP down'})

    def test_unknown_user(self):
        result = send_welcome_email('00000000-0000-0000-0000-000000000000')
        self.assertEqual(result['status'], 'error')
