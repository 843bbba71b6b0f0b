# Overview: Interfaces to external collaborators (geocoding, push notifications) and their in-process defaults.

from __future__ import annotations

from typing import Protocol

from flask import current_app

from ..models import Address, DomainEvent


GEOCODER_KEY = "dairy.geocoder"
NOTIFIER_KEY = "dairy.push_notifier"


class Geocoder(Protocol):
    def geocode(self, address: Address) -> tuple[float, float] | None: ...


class PushNotifier(Protocol):
    def send(self, event: DomainEvent) -> None: ...


class NullGeocoder:
    """Resolves nothing; addresses without coordinates stay unresolved."""

    def geocode(self, address: Address) -> tuple[float, float] | None:
        return None


class StaticGeocoder:
    """Lookup-table geocoder keyed by pincode, for development and tests."""

    def __init__(self, coordinates_by_pincode: dict[str, tuple[float, float]]):
        self.coordinates_by_pincode = dict(coordinates_by_pincode)

    def geocode(self, address: Address) -> tuple[float, float] | None:
        return self.coordinates_by_pincode.get(address.pincode)


class LogPushNotifier:
    """Writes notifications to the application log instead of a push provider."""

    def send(self, event: DomainEvent) -> None:
        current_app.logger.info(
            "push notification user=%s event=%s %s#%s",
            event.user_id,
            event.event_type,
            event.entity_type,
            event.entity_id,
        )


def init_integrations(app, *, geocoder: Geocoder | None = None, notifier: PushNotifier | None = None) -> None:
    app.extensions[GEOCODER_KEY] = geocoder or NullGeocoder()
    app.extensions[NOTIFIER_KEY] = notifier or LogPushNotifier()


def get_geocoder() -> Geocoder:
    return current_app.extensions[GEOCODER_KEY]


def get_notifier() -> PushNotifier:
    return current_app.extensions[NOTIFIER_KEY]
