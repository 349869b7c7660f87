import unittest

from payments import build_venmo_link, format_amount, mock_apple_pay


class PaymentLinkTests(unittest.TestCase):
    def test_venmo_link_shape(self) -> None:
        link = build_venmo_link("vparv", 25, "Split payment")
        self.assertEqual(link, "venmo://paycharge?txn=pay&recipients=vparv&amount=25.00&note=Split%20payment")

    def test_venmo_link_strips_handle_and_encodes_note(self) -> None:
        link = build_venmo_link(" @sam ", 6.5, "Dinner & drinks")
        self.assertIn("recipients=sam&", link)
        self.assertIn("amount=6.50", link)
        self.assertTrue(link.endswith("note=Dinner%20%26%20drinks"))

    def test_venmo_default_note(self) -> None:
        self.assertTrue(build_venmo_link("sam", 1).endswith("note=Split%20payment"))

    def test_venmo_requires_recipient(self) -> None:
        with self.assertRaises(ValueError):
            build_venmo_link("  ", 10)

    def test_apple_pay_is_completed_immediately(self) -> None:
        result = mock_apple_pay(32.5)
        self.assertEqual(result["status"], "completed")
        self.assertEqual(result["amount"], "32.50")
        self.assertTrue(result["transaction_id"].startswith("ap_"))

    def test_format_amount(self) -> None:
        self.assertEqual(format_amount(13.0), "13.00")
        self.assertEqual(format_amount(0.1 + 0.2), "0.30")


if __name__ == "__main__":
    unittest.main()
