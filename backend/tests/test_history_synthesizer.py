import datetime

from services.history_synthesizer import (
    LinearCongruentialGenerator,
    state_multiplier,
    string_hash,
    synthesize,
)

END = datetime.date(2025, 6, 30)


def test_same_key_gives_identical_series():
    first = synthesize('Maharashtra', 'Pune', 'Onion', end_date=END)
    second = synthesize('Maharashtra', 'Pune', 'Onion', end_date=END)

    assert first == second
    assert len(first) == 90


def test_different_keys_give_different_series():
    pune = synthesize('Maharashtra', 'Pune', 'Onion', end_date=END)
    nashik = synthesize('Maharashtra', 'Nashik', 'Onion', end_date=END)

    assert [r['modal_price'] for r in pune] != [r['modal_price'] for r in nashik]


def test_series_is_daily_ascending_and_ends_at_end_date():
    series = synthesize('Karnataka', 'Hubli', 'Groundnut', end_date=END)
    dates = [r['arrival_date'] for r in series]

    assert dates[-1] == END
    assert dates[0] == END - datetime.timedelta(days=89)
    assert all(b - a == datetime.timedelta(days=1) for a, b in zip(dates, dates[1:]))


def test_prices_respect_band_and_arrivals_are_positive():
    for row in synthesize('Punjab', 'Khanna', 'Wheat', end_date=END):
        assert row['min_price'] <= row['modal_price'] <= row['max_price']
        assert row['modal_price'] > 0
        assert 0 < row['arrivals_tonnes'] <= 1000
        assert row['data_source'] == 'synthetic'


def test_unknown_commodity_uses_default_base_price():
    series = synthesize('Kerala', 'Kochi', 'Dragonfruit', end_date=END)
    mean = sum(r['modal_price'] for r in series) / len(series)

    assert 2000 < mean < 3000


def test_lcg_and_hash_are_stable():
    rng = LinearCongruentialGenerator(0)
    assert rng.next_float() == 1013904223 / 2 ** 32

    assert string_hash('') == 0
    assert string_hash('a') == 97
    assert string_hash('ab') == 97 * 31 + 98


def test_state_multiplier_is_bounded():
    for state in ('Maharashtra', 'Karnataka', 'Punjab', '', 'Uttar Pradesh'):
        assert 0.95 <= state_multiplier(state) <= 1.05
