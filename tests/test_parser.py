from decimal import Decimal

import pytest

from comment_auction.parser import format_amount, parse_bid_amount, to_money


class TestParseBidAmount:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("$25", "25.00"),
            ("I bid $25", "25.00"),
            ("$25.5", "25.50"),
            ("$25.50 please", "25.50"),
            ("25 dollars", "25.00"),
            ("I'll go 30 Dollars", "30.00"),
            ("bid 40", "40.00"),
            ("BID: 42.75", "42.75"),
            ("bid $45", "45.00"),
            ("50", "50.00"),
            ("  50.25  ", "50.25"),
            ("60$", "60.00"),
            ("60 $", "60.00"),
        ],
    )
    def test_recognized_formats(self, text, expected):
        assert parse_bid_amount(text) == Decimal(expected)

    @pytest.mark.parametrize(
        "text",
        [
            None,
            "",
            "   ",
            "great guitar!",
            "$25.999",
            "$1,000",
            "1,000 dollars",
            "-5",
            "$0",
            "0",
            "I have 2 of these",
            "25 bucks",
        ],
    )
    def test_not_a_bid(self, text):
        assert parse_bid_amount(text) is None

    def test_dollar_sign_beats_bid_keyword(self):
        """Should prefer the dollar-prefixed amount over a later pattern."""
        assert parse_bid_amount("bid 30 or $40") == Decimal("40.00")

    def test_zero_match_falls_through(self):
        """Should keep looking when a higher-priority pattern matches zero."""
        assert parse_bid_amount("$0 or 20 dollars") == Decimal("20.00")

    def test_bare_number_must_be_whole_comment(self):
        assert parse_bid_amount("50") == Decimal("50.00")
        assert parse_bid_amount("lot 50 looks great") is None

    @pytest.mark.parametrize("template", ["${}", "{} dollars", "bid: ${}", "{}", "{}$"])
    @pytest.mark.parametrize("amount", ["0.01", "1.00", "25.50", "123.40", "99999.99"])
    def test_formatted_amount_parses_back(self, template, amount):
        amount = Decimal(amount)
        assert parse_bid_amount(template.format(format_amount(amount))) == amount


class TestMoney:
    def test_to_money_quantizes(self):
        assert to_money("7") == Decimal("7.00")
        assert to_money(10.1) == Decimal("10.10")
        assert to_money(Decimal("3.456")) == Decimal("3.46")

    def test_format_amount(self):
        assert format_amount(Decimal("25")) == "25.00"
