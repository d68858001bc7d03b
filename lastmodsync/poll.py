import time
import logging
from datetime import timedelta


LOGGER = logging.getLogger(__name__)


def _to_seconds(interval) -> float:
    if isinstance(interval, timedelta):
        interval = interval.total_seconds()
    interval = float(interval)
    if interval <= 0:
        raise ValueError("polling interval must be positive, got %s" % interval)
    return interval


class Poller:
    """Consulta periodicamente a fonte remota por novas atualizações.

    O primeiro ciclo é um `MergeCycle` completo: itens atualizados na fonte e,
    em seguida, os itens do cache que não foram atualizados. Os ciclos
    seguintes entregam apenas os itens atualizados na fonte, já que os itens
    do cache foram todos entregues uma vez.

    Como a consulta é periódica, a iteração nunca termina. Para encerrá-la
    basta que o chamador abandone o iterador. Qualquer exceção encerra a
    iteração.

    :param interval: o tempo mínimo, em segundos ou `timedelta`, entre o
    início de dois ciclos consecutivos. NÃO é o tempo entre o fim de um ciclo
    e o início do próximo: o tempo gasto pelo chamador consumindo os itens
    conta como parte da espera. No primeiro ciclo o intervalo começa a contar
    quando termina a consulta à fonte remota.
    """

    def __init__(self, synchronizer, interval, clock=time.monotonic, sleep=time.sleep):
        self.synchronizer = synchronizer
        self.interval = _to_seconds(interval)
        self._clock = clock
        self._sleep = sleep
        self.cycles = 0

    def _start_timer(self) -> float:
        return self._clock() + self.interval

    def _wait_until(self, deadline: float) -> None:
        tracer = self.synchronizer.tracer
        with tracer.span("wait_between_polling", interval_ms=self.interval * 1000):
            remaining = deadline - self._clock()
            if remaining > 0:
                LOGGER.debug("waiting %.3f seconds before the next poll", remaining)
                self._sleep(remaining)

    def __iter__(self):
        self.cycles = 1
        LOGGER.info("starting polling cycle #%s", self.cycles)
        cycle = self.synchronizer.sync()
        yield from cycle.remote_items()
        deadline = self._start_timer()
        yield from cycle.stale_items()
        LOGGER.info(
            "polling cycle #%s finished: %s items from remote, %s items from cache",
            self.cycles,
            len(cycle.seen),
            cycle.stale_count,
        )

        while True:
            self._wait_until(deadline)
            self.cycles += 1
            LOGGER.info("starting polling cycle #%s", self.cycles)
            deadline = self._start_timer()
            count = 0
            for item in self.synchronizer.observe():
                count += 1
                yield item
            LOGGER.info(
                "polling cycle #%s finished: %s items from remote", self.cycles, count
            )
