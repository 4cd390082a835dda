import numpy as np
import pytest

from usdrealize.animation import AnimatedNodeRegistry, AnimationPlayer, AnimationState, state_for_stage
from usdrealize.mesh_builder import build_mesh_geometry
from usdrealize.prims import define_prim, make_stage_root
from usdrealize.scene import Group


def _moving_xform(root):
    prim = define_prim(root, "/World/Mover", "Xform")
    prim.set_attr("xformOp:translate", time_samples={0.0: (0.0, 0.0, 0.0), 10.0: (10.0, 0.0, 0.0)})
    prim.set_attr("xformOpOrder", ["xformOp:translate"])
    return prim


def _player(registry, start=0.0, end=10.0, fps=24.0):
    state = AnimationState(current_time=start, start_time=start, end_time=end, frames_per_second=fps)
    return AnimationPlayer(registry, state)


def test_xform_entry_follows_time(stage_root):
    prim = _moving_xform(stage_root)
    node = Group(prim.path)
    registry = AnimatedNodeRegistry()
    registry.register_xform(node, prim)
    assert registry.apply_at_time(2.0) == 1
    np.testing.assert_allclose(node.position, [2.0, 0.0, 0.0])
    assert registry.counts() == {"xform": 1, "points": 0, "skeleton": 0}


def test_points_entries_share_prim(stage_root, cube_prim):
    moved = [(x + 1.0, y, z) for x, y, z in cube_prim.get("points").default]
    cube_prim.get("points").time_samples = {0.0: cube_prim.get("points").default, 1.0: moved}
    geometry = build_mesh_geometry(cube_prim).geometry
    registry = AnimatedNodeRegistry()
    registry.register_points(cube_prim, geometry)
    registry.register_points(cube_prim, geometry)
    assert len(registry) == 1
    registry.apply_at_time(1.0)
    assert geometry.attributes["position"][:, 0].min() == pytest.approx(0.0)


def test_set_time_clamps_and_applies(stage_root):
    prim = _moving_xform(stage_root)
    node = Group(prim.path)
    registry = AnimatedNodeRegistry()
    registry.register_xform(node, prim)
    player = _player(registry)
    assert player.set_time(50.0) == 10.0
    np.testing.assert_allclose(node.position, [10.0, 0.0, 0.0])
    assert player.set_time(-3.0) == 0.0
    assert player.state.current_time == 0.0


def test_tick_needs_playing_and_entries(stage_root):
    registry = AnimatedNodeRegistry()
    player = _player(registry)
    player.play()
    assert not player.tick(1.0)

    registry.register_xform(Group("n"), _moving_xform(stage_root))
    player.pause()
    assert not player.tick(2.0)
    assert player.state.current_time == 0.0


def test_tick_advances_and_wraps(stage_root):
    registry = AnimatedNodeRegistry()
    registry.register_xform(Group("n"), _moving_xform(stage_root))
    player = _player(registry)
    player.set_time(9.0)
    player.play()
    assert not player.tick(100.0)
    assert player.tick(100.125)
    assert player.state.current_time == pytest.approx(2.0)


def test_stop_keeps_current_time(stage_root):
    registry = AnimatedNodeRegistry()
    registry.register_xform(Group("n"), _moving_xform(stage_root))
    player = _player(registry)
    player.play()
    player.tick(0.0)
    player.tick(0.25)
    player.stop()
    assert not player.playing
    assert player.state.current_time == pytest.approx(6.0)
    player.set_playing(True)
    assert player.playing


def test_state_for_stage_uses_metadata():
    root = make_stage_root(startTimeCode=1.0, endTimeCode=48.0, framesPerSecond=30.0)
    state = state_for_stage(root)
    assert (state.start_time, state.end_time, state.frames_per_second) == (1.0, 48.0, 30.0)
    assert state.current_time == 1.0
    assert not state.playing
    assert state_for_stage(root, 12.0).frames_per_second == 12.0


def test_state_for_stage_without_samples():
    state = state_for_stage(make_stage_root())
    assert (state.start_time, state.end_time) == (0.0, 0.0)
    assert state.to_dict()["frames_per_second"] == 24.0
