from __future__ import annotations

import asyncio
import logging

from clock import Clock
from metrics import ERRORS, ITERATION_DURATION, ITERATIONS, MetricsCollector
from ramp import WorkerFactory
from scenario import RunContext, ScenarioEngine, VirtualUser, draw_delay


logger = logging.getLogger(__name__)


async def worker_loop(
    user: VirtualUser,
    stop_event: asyncio.Event,
    context: RunContext,
    engine: ScenarioEngine,
    clock: Clock,
    collector: MetricsCollector,
) -> None:
    """Run scenario iterations for one virtual user until it is told to stop.

    The stop signal is only honoured between iterations, so an in-flight
    scenario always runs to completion. Pacing waits end early on stop.
    """
    logger.debug("VU %d started", user.id)
    while not stop_event.is_set():
        started = clock.now()
        try:
            outcome = await engine.run_scenario(context, user)
            pacing_s = outcome.pacing_s
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("VU %d iteration %d failed", user.id, user.iterations)
            collector.add_rate(ERRORS, True)
            pacing_s = draw_delay(user.rng, engine.idle_pacing)

        await clock.wait(stop_event, pacing_s)
        user.iterations += 1
        collector.add_counter(ITERATIONS)
        collector.add_trend(ITERATION_DURATION, (clock.now() - started) * 1000.0)
    logger.debug("VU %d stopped after %d iterations", user.id, user.iterations)


def build_worker_factory(
    context: RunContext,
    engine: ScenarioEngine,
    clock: Clock,
    collector: MetricsCollector,
) -> WorkerFactory:
    def factory(user: VirtualUser, stop_event: asyncio.Event):
        return worker_loop(
            user=user,
            stop_event=stop_event,
            context=context,
            engine=engine,
            clock=clock,
            collector=collector,
        )

    return factory
