from system_monitor import get_disk_stats


def test_reports_nearest_existing_volume(tmp_path):
    stats = get_disk_stats(tmp_path / "not" / "created" / "yet")

    assert stats["disk_path"] == str(tmp_path)
    assert stats["disk_total_bytes"] > 0
    assert 0 <= stats["disk_percent"] <= 100
