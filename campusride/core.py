# campusride/core.py
import random
from datetime import datetime
from typing import Optional

from sqlalchemy.engine import Engine

from .captains import CaptainPresence
from .collaborators import (
    GeodesicRouter,
    LocalOrderGateway,
    LogNotifier,
    NotificationDispatcher,
    PaymentGateway,
    RoutingProvider,
)
from .config import Settings
from .database import SessionFactory, create_db_engine, init_db
from .geo import GeoIndex
from .matching import MatchingEngine
from .payments import PaymentReconciler
from .rides import RideLifecycle
from .service import Clock
from .store import RideStore
from .sweeper import ExpirySweeper


class RideCore:
    """Wires the ride services to one database, one geo index and the collaborators."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        engine: Optional[Engine] = None,
        router: Optional[RoutingProvider] = None,
        notifier: Optional[NotificationDispatcher] = None,
        gateway: Optional[PaymentGateway] = None,
        clock: Clock = datetime.utcnow,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings or Settings.from_env()
        self.engine = engine or create_db_engine(self.settings.database_url)
        init_db(self.engine)

        self.sessions = SessionFactory(self.engine)
        self.store = RideStore(self.sessions)
        self.geo = GeoIndex()
        self.notifier = notifier or LogNotifier()
        rng = rng or random.SystemRandom()

        common = dict(
            store=self.store,
            geo=self.geo,
            notifier=self.notifier,
            settings=self.settings,
            clock=clock,
            rng=rng,
        )
        self.matching = MatchingEngine(router=router or GeodesicRouter(self.settings.average_speed_kmh), **common)
        self.rides = RideLifecycle(**common)
        self.payments = PaymentReconciler(gateway=gateway or LocalOrderGateway(rng), **common)
        self.captains = CaptainPresence(**common)
        self.sweeper = ExpirySweeper(self.matching, self.settings.sweep_interval_seconds)
