import re

from django.test import TestCase

from backend.apps.accounts.models import User
from backend.apps.accounts.services import generate_referral_code, register_student
from backend.apps.payments.models import Referral
from tests.factories import UserFactory


class GenerateReferralCodeTests(TestCase):

    def test_prefix_and_digits(self):
        self.assertTrue(re.match(r"^ASHA\d{4}$", generate_referral_code("Asha Patel")))

    def test_short_and_non_letter_names_are_padded(self):
        self.assertTrue(re.match(r"^JOXX\d{4}$", generate_referral_code("Jo")))
        self.assertTrue(re.match(r"^AXBX\d{4}$", generate_referral_code("a-b")))
        self.assertTrue(re.match(r"^XXXX\d{4}$", generate_referral_code("")))


class RegisterStudentTests(TestCase):

    def _register(self, **kwargs):
        params = {"name": "Meera Shah", "email": "meera@example.com", "password": "pass12345"}
        params.update(kwargs)
        return register_student(**params)

    def test_plain_signup(self):
        with self.captureOnCommitCallbacks() as callbacks:
            result = self._register()

        self.assertTrue(result["success"])
        student = result["student"]
        self.assertEqual(student.role, User.Role.STUDENT)
        self.assertTrue(student.check_password("pass12345"))
        self.assertTrue(student.referral_code.startswith("MEER"))
        self.assertIsNone(student.library)
        self.assertIsNone(result["referral_id"])
        self.assertEqual(len(callbacks), 1)

    def test_signup_with_referral_code(self):
        referrer = UserFactory(referral_code="ASHA1234")

        result = self._register(referral_code="asha1234")

        referral = Referral.objects.get(pk=result["referral_id"])
        self.assertEqual(referral.referrer, referrer)
        self.assertEqual(referral.referee, result["student"])
        self.assertEqual(referral.status, Referral.Status.PENDING)
        self.assertEqual(result["student"].library, referrer.library)

    def test_unknown_referral_code_is_ignored(self):
        result = self._register(referral_code="NOPE0000")
        self.assertTrue(result["success"])
        self.assertFalse(Referral.objects.exists())

    def test_duplicate_email(self):
        UserFactory(email="meera@example.com")
        result = self._register(email="MEERA@example.com")
        self.assertFalse(result["success"])
