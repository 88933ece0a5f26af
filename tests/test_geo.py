import pytest

from kai_matching.services.geo import calculate_distance


def test_identical_points_are_zero():
    assert calculate_distance(-33.9249, 18.4241, -33.9249, 18.4241) == 0.0


def test_distance_is_symmetric():
    """Swapping the points never changes the distance."""
    a = (-26.2041, 28.0473)  # Johannesburg
    b = (-33.9249, 18.4241)  # Cape Town

    there = calculate_distance(*a, *b)
    back = calculate_distance(*b, *a)

    assert there == pytest.approx(back)
    # ~790 miles as the crow flies
    assert 760 < there < 820


def test_one_degree_of_latitude():
    assert calculate_distance(0, 0, 1, 0) == pytest.approx(69.1, abs=0.1)


def test_antipodal_points_do_not_blow_up():
    d = calculate_distance(0, 0, 0, 180)
    assert d == pytest.approx(3959 * 3.141592653589793, rel=1e-9)
