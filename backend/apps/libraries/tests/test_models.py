from django.db import IntegrityError
from django.test import TestCase

from tests.factories import BranchFactory, SeatFactory


class BranchTests(TestCase):

    def test_full_address_skips_blank_parts(self):
        self.assertEqual(BranchFactory(address="12 MG Road", city="Pune").full_address, "12 MG Road, Pune")
        self.assertEqual(BranchFactory(address="", city="Pune").full_address, "Pune")


class SeatTests(TestCase):

    def test_seat_numbers_are_unique_per_branch(self):
        seat = SeatFactory(number="A1")
        SeatFactory(number="A1")
        with self.assertRaises(IntegrityError):
            SeatFactory(branch=seat.branch, number="A1")
