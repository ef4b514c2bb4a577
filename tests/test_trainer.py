"""
Integration tests for NnetTrainer.

Uses the torch reference network: one linear layer per output, so the
expected parameter change can be computed by hand.
"""

import copy
import json

import pytest
import torch
import torch.nn as nn
import sys
from pathlib import Path

# Add repo root to path
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from core.config import TrainerConfig
from core.example import NnetExample, NnetIo
from core.matrix import GeneralMatrix
from core.network import TorchNetwork
from training.objectives import ObjectiveError
from training.trainer import NnetTrainer
from training.update_policy import DirectUpdate, MomentumClipUpdate

LEARNING_RATE = 0.1


def make_network(objective_type='quadratic', with_regularizer=False):
    torch.manual_seed(0)
    net = TorchNetwork({'input': 3}, learning_rate=LEARNING_RATE)
    net.add_output('output', nn.Linear(3, 2, bias=False), objective_type=objective_type)
    if with_regularizer:
        net.add_output('output-reg', nn.Linear(3, 2, bias=False), objective_type='linear')
    return net


def make_example(x=None, target=None, deriv_weights=None):
    if x is None:
        x = torch.tensor([[1.0, 0.5, -1.0], [0.0, 2.0, 1.0]])
    if target is None:
        target = torch.tensor([[1.0, 0.0], [0.0, 1.0]])
    return NnetExample([
        NnetIo('input', GeneralMatrix.from_dense(x)),
        NnetIo('output', GeneralMatrix.from_dense(target), deriv_weights=deriv_weights),
    ])


def direct_config(**kwargs):
    return TrainerConfig(momentum=0.0, max_param_change=0.0, **kwargs)


def quadratic_step(weight, example):
    """Expected parameter change for a quadratic objective, no momentum."""
    x = example.get('input').features.to_dense()
    target = example.get('output').features.to_dense()
    deriv = target - x @ weight.t()
    return LEARNING_RATE * deriv.t() @ x


def test_print_total_stats_before_training(capsys):
    """Test that an unused trainer reports no data."""
    trainer = NnetTrainer(direct_config(), make_network())

    assert not trainer.print_total_stats()
    assert capsys.readouterr().out == ""


def test_print_total_stats_after_training(capsys):
    """Test that the lifetime summary is printed once data was seen."""
    trainer = NnetTrainer(direct_config(), make_network())
    trainer.train(make_example())

    assert trainer.print_total_stats()
    out = capsys.readouterr().out
    assert "Overall average objective function for 'output'" in out
    assert "log-prob-per-frame=" in out


def test_direct_mode_step_equals_gradient():
    """Test that each step adds exactly the current gradient, with no carried state."""
    net = make_network()
    trainer = NnetTrainer(direct_config(), net)
    weight = net.parameters()[0]
    example = make_example()

    assert isinstance(trainer.update_policy, DirectUpdate)
    for _ in range(2):
        before = weight.detach().clone()
        expected = quadratic_step(before, example)
        trainer.train(example)
        assert torch.allclose(weight.detach() - before, expected, atol=1e-6)

    assert trainer.num_minibatches_processed == 2


def test_objective_scale_applies_to_stats_and_derivative():
    """Test that an objective scale multiplies both the objective and the step."""
    plain_net = make_network()
    scaled_net = copy.deepcopy(plain_net)
    plain = NnetTrainer(direct_config(), plain_net)
    scaled = NnetTrainer(direct_config(objective_scales_str="output:2.0"), scaled_net)
    before = plain_net.parameters()[0].detach().clone()

    plain.train(make_example())
    scaled.train(make_example())

    plain_step = plain_net.parameters()[0].detach() - before
    scaled_step = scaled_net.parameters()[0].detach() - before
    assert torch.allclose(scaled_step, 2.0 * plain_step, atol=1e-6)
    assert scaled.objf_info['output'].tot_objf == pytest.approx(
        2.0 * plain.objf_info['output'].tot_objf
    )
    assert scaled.objf_info['output'].tot_weight == plain.objf_info['output'].tot_weight


def test_deriv_weights_scale_rows():
    """Test that per-row derivative weights mask rows out of the update."""
    net = make_network()
    trainer = NnetTrainer(direct_config(), net)
    weight = net.parameters()[0]
    before = weight.detach().clone()
    example = make_example(deriv_weights=torch.tensor([1.0, 0.0]))

    trainer.train(example)

    only_first_row = make_example(
        x=torch.tensor([[1.0, 0.5, -1.0]]), target=torch.tensor([[1.0, 0.0]])
    )
    assert torch.allclose(weight.detach() - before, quadratic_step(before, only_first_row), atol=1e-6)


def test_deriv_weights_ignored_when_disabled():
    """Test apply_deriv_weights=False."""
    net = make_network()
    trainer = NnetTrainer(direct_config(apply_deriv_weights=False), net)
    weight = net.parameters()[0]
    before = weight.detach().clone()
    example = make_example(deriv_weights=torch.zeros(2))

    trainer.train(example)

    assert torch.allclose(weight.detach() - before, quadratic_step(before, example), atol=1e-6)


def test_deriv_weights_length_mismatch():
    """Test that derivative weights must have one entry per row."""
    trainer = NnetTrainer(direct_config(), make_network())

    with pytest.raises(ObjectiveError, match="deriv_weights"):
        trainer.train(make_example(deriv_weights=torch.ones(3)))


def test_dimension_mismatch_is_fatal():
    """Test that supervision with the wrong number of columns aborts the step."""
    net = make_network()
    trainer = NnetTrainer(direct_config(), net)
    before = net.parameters()[0].detach().clone()

    with pytest.raises(ObjectiveError, match="mismatch"):
        trainer.train(make_example(target=torch.zeros(2, 5)))

    assert torch.equal(net.parameters()[0].detach(), before)
    assert trainer.num_minibatches_processed == 0


def test_unknown_entry_is_fatal():
    """Test that example entries must name network nodes."""
    trainer = NnetTrainer(direct_config(), make_network())
    example = make_example()
    example.io.append(NnetIo('extra', GeneralMatrix.from_dense(torch.zeros(2, 1))))

    with pytest.raises(KeyError, match="extra"):
        trainer.train(example)


def test_regularizer_companion():
    """Test that "<output>-reg" gets its own stats and its own derivative seed."""
    net = make_network(objective_type='linear', with_regularizer=True)
    reg_weight = net.parameters()[1]
    before = reg_weight.detach().clone()
    config = direct_config(add_regularizer=True, objective_scales_str="output-reg:0.5")
    trainer = NnetTrainer(config, net)
    example = make_example()
    x = example.get('input').features.to_dense()
    reg_output = x @ before.t()

    trainer.train(example)

    assert set(trainer.objf_info) == {'output', 'output-reg'}
    reg_info = trainer.objf_info['output-reg']
    assert reg_info.tot_weight == 2.0
    assert reg_info.tot_objf == pytest.approx(0.5 * float(reg_output.sum()), rel=1e-5)
    # Linear regularizer seeds all-ones, scaled by 0.5
    expected = LEARNING_RATE * 0.5 * torch.ones(2, 2).t() @ x
    assert torch.allclose(reg_weight.detach() - before, expected, atol=1e-6)


def test_regularizer_skipped_when_disabled():
    """Test that companions are ignored unless add_regularizer is set."""
    net = make_network(objective_type='linear', with_regularizer=True)
    trainer = NnetTrainer(direct_config(), net)

    trainer.train(make_example())

    assert set(trainer.objf_info) == {'output'}


def test_regularizer_kind_follows_primary_output():
    """Test that a cross-entropy output cannot drive a regularizer."""
    net = TorchNetwork({'input': 3}, learning_rate=LEARNING_RATE)
    net.add_output('output', nn.Sequential(nn.Linear(3, 2), nn.Sigmoid()), objective_type='xent')
    net.add_output('output-reg', nn.Linear(3, 2), objective_type='linear')
    trainer = NnetTrainer(direct_config(add_regularizer=True), net)

    with pytest.raises(ObjectiveError, match="Regularizer"):
        trainer.train(make_example())


def test_phase_reporting_across_calls(capsys):
    """Test that phases advance once per print_interval train calls."""
    trainer = NnetTrainer(direct_config(print_interval=2), make_network())

    for _ in range(5):
        trainer.train(make_example())

    info = trainer.objf_info['output']
    assert info.current_phase == 2
    assert len(trainer.metrics_logger.records('phase', 'output')) == 2
    out = capsys.readouterr().out
    assert "for minibatches 0-1" in out
    assert "for minibatches 2-3" in out


def test_multiple_outputs_share_counter():
    """Test that two outputs in one example advance phases together."""
    torch.manual_seed(0)
    net = TorchNetwork({'input': 3}, learning_rate=LEARNING_RATE)
    net.add_output('a', nn.Linear(3, 2), objective_type='quadratic')
    net.add_output('b', nn.Linear(3, 1), objective_type='quadratic')
    trainer = NnetTrainer(direct_config(print_interval=1), net)
    example = NnetExample([
        NnetIo('input', GeneralMatrix.from_dense(torch.ones(2, 3))),
        NnetIo('a', GeneralMatrix.from_dense(torch.zeros(2, 2))),
        NnetIo('b', GeneralMatrix.from_dense(torch.zeros(2, 1))),
    ])

    for _ in range(3):
        trainer.train(example)

    assert trainer.objf_info['a'].current_phase == 2
    assert trainer.objf_info['b'].current_phase == 2


def test_buffered_mode_discards_infinite_update(capsys):
    """Test that an infinite gradient leaves the parameters untouched."""
    net = make_network()
    trainer = NnetTrainer(TrainerConfig(momentum=0.5, max_param_change=1.0), net)
    weight = net.parameters()[0]
    before = weight.detach().clone()
    example = make_example(
        x=torch.ones(2, 3), target=torch.tensor([[float('inf'), 0.0], [0.0, 0.0]])
    )

    trainer.train(example)

    assert isinstance(trainer.update_policy, MomentumClipUpdate)
    assert torch.equal(weight.detach(), before)
    assert all(torch.count_nonzero(d) == 0 for d in trainer.update_policy.delta)
    assert "Infinite parameter change" in capsys.readouterr().out

    # Training continues with the next minibatch.
    trainer.train(make_example())
    assert not torch.equal(weight.detach(), before)


def test_buffered_mode_clips_large_steps(capsys):
    """Test that the global step norm is capped at max_param_change."""
    net = make_network()
    trainer = NnetTrainer(TrainerConfig(momentum=0.0, max_param_change=1e-3), net)
    weight = net.parameters()[0]
    before = weight.detach().clone()

    trainer.train(make_example(target=torch.full((2, 2), 100.0)))

    assert float((weight.detach() - before).norm()) == pytest.approx(1e-3, rel=1e-4)
    assert trainer.update_policy.num_clipped == 1
    assert "Parameter change too big" in capsys.readouterr().out


def test_compiler_reused_across_minibatches():
    """Test that same-shaped minibatches share one compiled computation."""
    trainer = NnetTrainer(direct_config(), make_network())

    for _ in range(3):
        trainer.train(make_example())

    assert trainer.compiler.num_compilations == 1


def test_component_stats_pass_through():
    """Test store_component_stats and zero_component_stats."""
    net = make_network()
    net.accumulate_component_stats('output', torch.ones(7, 2))

    trainer = NnetTrainer(direct_config(zero_component_stats=True, store_component_stats=True), net)
    assert net.component_stats == {}

    trainer.train(make_example())
    assert float(net.component_stats['output']['count']) == 2.0

    NnetTrainer(direct_config(zero_component_stats=False, store_component_stats=False), net).train(
        make_example()
    )
    assert float(net.component_stats['output']['count']) == 2.0


def test_train_is_not_reentrant():
    """Test that a second concurrent train() call is refused."""
    trainer = NnetTrainer(direct_config(), make_network())
    trainer._train_lock.acquire()
    try:
        with pytest.raises(RuntimeError, match="not reentrant"):
            trainer.train(make_example())
    finally:
        trainer._train_lock.release()


def test_stats_written_to_log_dir(tmp_path):
    """Test that config.log_dir streams phase records to disk."""
    trainer = NnetTrainer(direct_config(print_interval=1, log_dir=str(tmp_path)), make_network())

    trainer.train(make_example())
    trainer.train(make_example())

    lines = (tmp_path / 'phase_stats.jsonl').read_text().splitlines()
    assert [json.loads(line)['type'] for line in lines] == ['phase']


def test_regularizer_node_must_be_an_output():
    """Test that a companion name bound to an input node is an objective error."""
    net = TorchNetwork({'input': 3, 'output-reg': 2}, learning_rate=LEARNING_RATE)
    net.add_output('output', nn.Linear(3, 2, bias=False), objective_type='linear')
    trainer = NnetTrainer(direct_config(add_regularizer=True), net)

    with pytest.raises(ObjectiveError, match="not an output node"):
        trainer.train(make_example())
    assert trainer.num_minibatches_processed == 0
    assert trainer.objf_info == {}


def test_failed_minibatch_leaves_no_stats():
    """Test that an error on a later output discards the earlier outputs' stats."""
    torch.manual_seed(0)
    net = TorchNetwork({'input': 3}, learning_rate=LEARNING_RATE)
    net.add_output('a', nn.Linear(3, 2), objective_type='quadratic')
    net.add_output('b', nn.Linear(3, 1), objective_type='quadratic')
    trainer = NnetTrainer(direct_config(print_interval=1), net)
    before = [p.detach().clone() for p in net.parameters()]
    bad = NnetExample([
        NnetIo('input', GeneralMatrix.from_dense(torch.ones(2, 3))),
        NnetIo('a', GeneralMatrix.from_dense(torch.zeros(2, 2))),
        NnetIo('b', GeneralMatrix.from_dense(torch.zeros(2, 5))),
    ])

    with pytest.raises(ObjectiveError, match="mismatch"):
        trainer.train(bad)

    assert trainer.num_minibatches_processed == 0
    assert trainer.objf_info == {}
    for p, b in zip(net.parameters(), before):
        assert torch.equal(p.detach(), b)

    good = NnetExample([
        NnetIo('input', GeneralMatrix.from_dense(torch.ones(2, 3))),
        NnetIo('a', GeneralMatrix.from_dense(torch.zeros(2, 2))),
    ])
    trainer.train(good)
    assert trainer.objf_info['a'].tot_weight == 2.0
    assert trainer.objf_info['a'].current_phase == 0


def test_regularizer_uses_deriv_weights():
    """Test that per-row weights of the primary entry also weight the regularizer rows."""
    net = make_network(objective_type='linear', with_regularizer=True)
    reg_weight = net.parameters()[1]
    before = reg_weight.detach().clone()
    config = direct_config(add_regularizer=True, objective_scales_str="output-reg:0.5")
    trainer = NnetTrainer(config, net)
    example = make_example(deriv_weights=[1.0, 0.0])
    x = example.get('input').features.to_dense()

    trainer.train(example)

    # Only row 0 contributes to the regularizer step
    seed = 0.5 * torch.tensor([[1.0, 1.0], [0.0, 0.0]])
    expected = LEARNING_RATE * seed.t() @ x
    assert torch.allclose(reg_weight.detach() - before, expected, atol=1e-6)
    # Stats are not weighted by the per-row weights
    assert trainer.objf_info['output-reg'].tot_weight == 2.0


def test_quadratic_regularizer_through_train():
    """Test that a quadratic primary output drives a quadratic regularizer."""
    net = make_network(objective_type='quadratic', with_regularizer=True)
    reg_weight = net.parameters()[1]
    before = reg_weight.detach().clone()
    trainer = NnetTrainer(direct_config(add_regularizer=True), net)
    example = make_example()
    x = example.get('input').features.to_dense()
    reg_output = x @ before.t()

    trainer.train(example)

    reg_info = trainer.objf_info['output-reg']
    assert reg_info.tot_weight == 2.0
    assert reg_info.tot_objf == pytest.approx(-0.5 * float((reg_output ** 2).sum()), rel=1e-5)
    # Quadratic regularizer seeds the output itself
    expected = LEARNING_RATE * reg_output.t() @ x
    assert torch.allclose(reg_weight.detach() - before, expected, atol=1e-6)
