import pytest


torch = pytest.importorskip("torch", reason="torch not installed")


from gemma_session.engine.sampling import sample_top_k


def test_greedy_when_top_k_is_one() -> None:
    logits = torch.tensor([[0.1, 3.0, 0.2]])
    token_id, prob = sample_top_k(logits, temperature=0.7, top_k=1)
    assert token_id == 1
    assert 0.0 < prob <= 1.0


def test_greedy_when_temperature_is_zero() -> None:
    logits = torch.tensor([0.5, 0.1, 2.0])
    token_id, _ = sample_top_k(logits, temperature=0.0, top_k=50)
    assert token_id == 2


def test_top_k_restricts_candidates() -> None:
    logits = torch.tensor([5.0, 4.0, -100.0, -100.0])
    gen = torch.Generator().manual_seed(0)
    for _ in range(20):
        token_id, _ = sample_top_k(logits, temperature=1.0, top_k=2, generator=gen)
        assert token_id in {0, 1}


def test_same_seed_same_choices() -> None:
    logits = torch.zeros(32)

    def _draw(seed: int) -> list[int]:
        gen = torch.Generator().manual_seed(seed)
        return [sample_top_k(logits, temperature=1.0, top_k=32, generator=gen)[0] for _ in range(16)]

    assert _draw(1234) == _draw(1234)


def test_fp16_logits_do_not_overflow() -> None:
    logits = torch.tensor([10000.0, -10000.0, 0.0], dtype=torch.float16)
    token_id, prob = sample_top_k(logits, temperature=0.1, top_k=3, generator=torch.Generator().manual_seed(0))
    assert token_id == 0
    assert prob == pytest.approx(1.0)


def test_rejects_bad_parameters() -> None:
    logits = torch.zeros(4)
    with pytest.raises(ValueError):
        sample_top_k(logits, temperature=-1.0, top_k=1)
    with pytest.raises(ValueError):
        sample_top_k(logits, temperature=1.0, top_k=0)
