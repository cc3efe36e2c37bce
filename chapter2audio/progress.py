"""Progress reporting for chunk synthesis."""

from tqdm import tqdm


class ProgressReporter:
    """Wraps tqdm for chunk-level progress reporting."""

    def __init__(self, total_chunks: int):
        self._bar = tqdm(
            total=total_chunks,
            desc="Sintesi",
            unit="blocco",
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} blocchi [{elapsed}<{remaining}]",
        )

    def update(self, done: int, total: int) -> None:
        """Move the bar to ``done`` chunks out of ``total``."""
        self._bar.total = total
        self._bar.update(done - self._bar.n)

    def close(self) -> None:
        self._bar.close()
