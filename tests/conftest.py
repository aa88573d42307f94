import numpy as np
import pytest

from config import EvolutionConfig, GameConfig, CurriculumStage


@pytest.fixture
def small_config():
    """4 個体・1 ラン・数手で終わる構成"""
    return EvolutionConfig(
        population_size=4,
        runs_per_genome=1,
        hidden_size=2,
        immigrant_count=2,
        collective_min_agents=5,
        curriculum=(CurriculumStage("tiny", 0, 1.0, 4),
                    CurriculumStage("never", 10**9, 1.0, 4)),
        game=GameConfig(garbage_rate=0.0, base_reaction=0, max_action_delay=0),
    )


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
