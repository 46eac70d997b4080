from formatters import format_number, format_percent, format_price, mask_api_key, shorten_address


def test_mask_api_key_keeps_first_and_last_four():
    assert mask_api_key("abcd1234efgh5678") == "abcd...5678"
    assert mask_api_key("short") == "*****"
    assert mask_api_key(None) == ""


def test_numbers_render_na_when_unknown():
    assert format_price(None) == "N/A"
    assert format_percent("") == "N/A"
    assert format_number("not a number") == "N/A"


def test_number_abbreviations():
    assert format_number(1_234) == "1.23K"
    assert format_number(5_600_000) == "5.60M"
    assert format_number(7_000_000_000) == "7.00B"
    assert format_number(12.5) == "12.50"
    assert format_number(1_234, abbreviate=False) == "1,234.00"


def test_price_and_percent_precision():
    assert format_price(0.1234567) == "0.123457"
    assert format_percent(4.567) == "4.57%"
    assert format_percent(4.567, signed=True) == "+4.57%"


def test_shorten_address():
    assert shorten_address("EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v") == "EPjFWd...Dt1v"
    assert shorten_address("") == ""
