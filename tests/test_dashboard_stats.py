import unittest
from datetime import datetime, timezone
from unittest import mock

from dashboard_stats import (
    MapBounds,
    compute_dashboard_stats,
    parse_created_at,
    plottable,
    top_counts,
    with_coordinates,
    within_bounds,
)

NOW = datetime(2024, 5, 15, 14, 30, tzinfo=timezone.utc)


def report(created_at, **extra):
    data = {"id": created_at, "created_at": created_at, "crime_type": "theft", "postcode": "S10 5GG"}
    data.update(extra)
    return data


class TestComputeDashboardStats(unittest.TestCase):
    def test_counts(self):
        reports = [
            report("2024-05-15T09:00:00+00:00", has_vehicle=True, photos=[{"id": "p"}]),
            report("2024-05-15T00:00:00+00:00", crime_type="burglary"),
            report("2024-05-10T12:00:00+00:00", has_weapon=True, postcode=""),
            report("2024-04-01T12:00:00+00:00", crime_type="burglary", photos=[]),
        ]
        stats = compute_dashboard_stats(reports, now=NOW)
        self.assertEqual(stats["totalReports"], 4)
        self.assertEqual(stats["reportsToday"], 2)
        self.assertEqual(stats["reportsThisWeek"], 3)
        self.assertEqual(stats["reportsWithPhotos"], 1)
        self.assertEqual(stats["vehicleInvolved"], 1)
        self.assertEqual(stats["weaponInvolved"], 1)
        self.assertEqual(stats["topCrimeTypes"], [{"type": "burglary", "count": 2}, {"type": "theft", "count": 2}])
        self.assertEqual(stats["topPostcodes"], [{"postcode": "S10 5GG", "count": 3}, {"postcode": "Unknown", "count": 1}])

    def test_empty(self):
        stats = compute_dashboard_stats([], now=NOW)
        self.assertEqual(stats["totalReports"], 0)
        self.assertEqual(stats["topCrimeTypes"], [])

    def test_unparseable_dates_are_not_counted_as_recent(self):
        stats = compute_dashboard_stats([report("yesterday")], now=NOW)
        self.assertEqual(stats["reportsToday"], 0)
        self.assertEqual(stats["totalReports"], 1)


class TestHelpers(unittest.TestCase):
    def test_parse_created_at(self):
        self.assertEqual(parse_created_at("2024-05-15T09:00:00Z"), datetime(2024, 5, 15, 9, tzinfo=timezone.utc))
        self.assertEqual(parse_created_at("2024-05-15T09:00:00").tzinfo, timezone.utc)
        self.assertIsNone(parse_created_at(None))

    def test_top_counts_limits_results(self):
        values = [f"type{i}" for i in range(8)]
        self.assertEqual(len(top_counts(values, "type")), 5)

    def test_coordinates_and_plottable(self):
        geocoder = mock.Mock()
        geocoder.coordinates_for.side_effect = lambda r: (53.4, -1.5) if r["id"] == "a" else None
        reports = with_coordinates([{"id": "a"}, {"id": "b"}], geocoder)
        self.assertEqual(reports[0]["coordinates"], [53.4, -1.5])
        self.assertIsNone(reports[1]["coordinates"])
        self.assertEqual([r["id"] for r in plottable(reports)], ["a"])


class TestWithinBounds(unittest.TestCase):
    bounds = MapBounds(south=53.0, north=54.0, west=-2.0, east=-1.0)

    def test_edges_are_inside(self):
        reports = [
            {"id": "sw", "created_at": "2024-05-01T00:00:00+00:00", "coordinates": [53.0, -2.0]},
            {"id": "ne", "created_at": "2024-05-02T00:00:00+00:00", "coordinates": [54.0, -1.0]},
            {"id": "north", "created_at": "2024-05-03T00:00:00+00:00", "coordinates": [54.0001, -1.5]},
            {"id": "east", "created_at": "2024-05-04T00:00:00+00:00", "coordinates": [53.5, -0.9999]},
            {"id": "unplotted", "created_at": "2024-05-05T00:00:00+00:00", "coordinates": None},
        ]
        self.assertEqual([r["id"] for r in within_bounds(reports, self.bounds)], ["ne", "sw"])

    def test_newest_first_and_capped_at_ten(self):
        reports = [
            {"id": f"r{day:02d}", "created_at": f"2024-05-{day:02d}T12:00:00+00:00", "coordinates": [53.5, -1.5]}
            for day in range(1, 16)
        ]
        nearby = within_bounds(reports, self.bounds)
        self.assertEqual(len(nearby), 10)
        self.assertEqual(nearby[0]["id"], "r15")
        self.assertEqual(nearby[-1]["id"], "r06")

    def test_custom_limit(self):
        reports = [{"id": "a", "created_at": "2024-05-01T00:00:00Z", "coordinates": [53.5, -1.5]}] * 3
        self.assertEqual(len(within_bounds(reports, self.bounds, limit=2)), 2)


if __name__ == "__main__":
    unittest.main()
