from __future__ import annotations

from datetime import datetime
from datetime import timezone

import pytest

from dependabot_server.errors import ConfigFileValidationError
from dependabot_server.schedules import make_trigger
from dependabot_server.schedules import next_occurrence
from dependabot_server.schedules import normalize_crontab
from dependabot_server.schemas import DependabotSchedule
from dependabot_server.schemas import RepositoryUpdate
from dependabot_server.schemas import parse_configuration
from tests.helpers import CONFIG_FILE


def test_defaults_are_applied():
    configuration = parse_configuration(CONFIG_FILE)
    npm, nuget = configuration.updates

    assert npm.open_pull_requests_limit == 5
    assert npm.schedule.day.value == "sunday"
    assert nuget.schedule.time == "02:00"
    assert nuget.schedule.day.value == "monday"
    assert nuget.schedule.timezone == "Etc/UTC"
    assert nuget.security_only is True
    assert npm.security_only is False
    assert configuration.registries == {}


@pytest.mark.parametrize(
    "schedule, expected",
    [
        ({"interval": "daily", "time": "03:45"}, "45 03 * * mon-fri"),
        ({"interval": "weekly", "day": "Sunday", "time": "9:05"}, "05 09 * * sun"),
        ({"interval": "monthly"}, "00 02 1 * *"),
        ({"interval": "quarterly"}, "00 02 1 1,4,7,10 *"),
        ({"interval": "semiannually"}, "00 02 1 1,7 *"),
        ({"interval": "yearly"}, "00 02 1 1 *"),
        ({"interval": "cron", "cronjob": "0 5 * * 1"}, "0 5 * * 1"),
    ],
)
def test_generate_cron(schedule, expected):
    assert DependabotSchedule.model_validate(schedule).generate_cron() == expected


def test_unquoted_time_is_read_as_a_time_of_day():
    configuration = parse_configuration(
        """
version: 2
updates:
  - package-ecosystem: "pip"
    directory: "/"
    schedule:
      interval: "daily"
      time: 03:45
"""
    )
    assert configuration.updates[0].schedule.time == "03:45"


@pytest.mark.parametrize(
    "schedule",
    [
        {"interval": "daily", "time": "25:00"},
        {"interval": "daily", "timezone": "Mars/Olympus"},
        {"interval": "cron"},
        {"interval": "cron", "cronjob": "not a cron"},
        {"interval": "hourly"},
    ],
)
def test_invalid_schedules(schedule):
    with pytest.raises(ValueError):
        DependabotSchedule.model_validate(schedule)


def test_directory_or_directories_is_required():
    with pytest.raises(ConfigFileValidationError) as exc_info:
        parse_configuration(
            """
version: 2
updates:
  - package-ecosystem: "npm"
    schedule:
      interval: "weekly"
"""
        )
    assert "directory" in str(exc_info.value)


def test_registry_references_must_match():
    content = """
version: 2
registries:
  reg1:
    type: npm-registry
    url: https://npm.example.com
  unused:
    type: nuget-feed
    url: https://nuget.example.com/v3/index.json
updates:
  - package-ecosystem: "npm"
    directory: "/"
    registries: ["reg1", "missing"]
    schedule:
      interval: "weekly"
"""
    with pytest.raises(ConfigFileValidationError) as exc_info:
        parse_configuration(content)

    message = str(exc_info.value)
    assert "'missing' have not been configured" in message
    assert "'unused' have not been referenced" in message


def test_registry_requires_url():
    content = """
version: 2
registries:
  reg1:
    type: npm-registry
updates:
  - package-ecosystem: "npm"
    directory: "/"
    registries: ["reg1"]
    schedule:
      interval: "weekly"
"""
    with pytest.raises(ConfigFileValidationError, match="'url' is required"):
        parse_configuration(content)


def test_branch_name_separator_is_restricted():
    content = """
version: 2
updates:
  - package-ecosystem: "npm"
    directory: "/"
    pull-request-branch-name:
      separator: "+"
    schedule:
      interval: "weekly"
"""
    with pytest.raises(ConfigFileValidationError):
        parse_configuration(content)


@pytest.mark.parametrize(
    "content",
    ["version: 2\nupdates: [", "just a string", "version: 1\nupdates: []"],
)
def test_unusable_documents(content):
    with pytest.raises(ConfigFileValidationError):
        parse_configuration(content)


def test_repository_update_round_trips_through_documents():
    update = RepositoryUpdate.from_update(parse_configuration(CONFIG_FILE).updates[0])
    update.latest_update = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    document = update.to_document()
    assert document["package-ecosystem"] == "npm"
    assert RepositoryUpdate.model_validate(document).latest_update == update.latest_update


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("0 2 * * 0", "0 2 * * sun"),
        ("0 2 * * 7", "0 2 * * sun"),
        ("0 2 * * 1-5", "0 2 * * mon,tue,wed,thu,fri"),
        ("0 2 * * 1/2", "0 2 * * mon,wed,fri"),
        ("0 2 * * */2", "0 2 * * sun,tue,thu,sat"),
        ("0 2 * * */3", "0 2 * * sun,wed,sat"),
        ("0 2 * * sat,0", "0 2 * * sat,sun"),
        ("0 2 * * *", "0 2 * * *"),
    ],
)
def test_numeric_days_follow_crontab(expression, expected):
    assert normalize_crontab(expression) == expected


def test_crontab_zero_fires_on_sunday():
    trigger = make_trigger("0 2 * * 0")
    # 2024-05-01 is a Wednesday
    fire = next_occurrence(trigger, datetime(2024, 5, 1, tzinfo=timezone.utc))
    assert fire.weekday() == 6
    assert (fire.day, fire.hour) == (5, 2)


def test_next_occurrence_is_strictly_after():
    trigger = make_trigger("0 2 * * *")
    fired = datetime(2024, 5, 1, 2, 0, tzinfo=timezone.utc)
    assert next_occurrence(trigger, fired) == datetime(2024, 5, 2, 2, 0, tzinfo=timezone.utc)


def test_stepped_days_fire_on_crontab_weekdays():
    trigger = make_trigger("0 0 * * */2")
    fire = datetime(2024, 5, 1, tzinfo=timezone.utc)
    days = []
    for _ in range(4):
        fire = next_occurrence(trigger, fire)
        days.append(fire.strftime("%a"))
    # 2024-05-01 is a Wednesday
    assert days == ["Thu", "Sat", "Sun", "Tue"]
