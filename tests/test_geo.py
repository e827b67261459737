from surplus_market.geo import haversine_km, sort_by_distance


def test_haversine_known_distance():
    # Paris -> London, roughly 344 km
    km = haversine_km(48.8566, 2.3522, 51.5074, -0.1278)
    assert 330 < km < 360


def test_zero_distance():
    assert haversine_km(10.0, 20.0, 10.0, 20.0) == 0


def test_sort_by_distance_puts_unknown_positions_last():
    places = {
        "far": (52.52, 13.40),
        "near": (48.86, 2.35),
        "nowhere": None,
        "mid": (50.85, 4.35),
    }
    ranked = sort_by_distance(list(places), (48.85, 2.35), lambda name: places[name])
    assert [name for name, _ in ranked] == ["near", "mid", "far", "nowhere"]
    assert ranked[-1][1] is None
    assert ranked[0][1] < ranked[1][1] < ranked[2][1]
