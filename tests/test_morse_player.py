"""Tests for the Morse playback engine lifecycle."""

from __future__ import annotations

from unittest.mock import MagicMock

import numpy as np
import pytest

import utils.morse_player as morse_player_module
from utils.morse import (
    PARIS_CONSTANT,
    AlreadyPlaying,
    EmptyOrUnencodable,
    InvalidConfiguration,
    MissingCollaborator,
    TimingConfig,
    Waveform,
    encode,
    schedule,
)
from utils.morse_player import MorsePlayer, render_morse, render_morse_wav
from utils.tone import GEN_STOPPED, OfflineToneGenerator, VirtualClock


def _mock_generator(now: float = 0.0) -> MagicMock:
    gen = MagicMock()
    gen.current_time = now
    return gen


class TestConstruction:
    def test_missing_generator(self):
        with pytest.raises(MissingCollaborator):
            MorsePlayer(None)

    def test_generator_without_required_methods(self):
        class NotAGenerator:
            def start(self, when=None):
                pass

        with pytest.raises(MissingCollaborator) as excinfo:
            MorsePlayer(NotAGenerator())
        assert 'set_value_at_time' in str(excinfo.value)

    def test_initial_state_and_defaults(self, player, generator):
        assert not player.is_playing
        assert player.schedule is None
        assert player.wpm == pytest.approx(20.0)
        assert player.frequency == 600.0
        assert player.volume == 1.0
        assert player.waveform is Waveform.SINE
        assert generator.frequency == 600.0
        assert generator.level == 1.0


class TestConfiguration:
    def test_wpm_round_trip(self, player):
        player.wpm = 20
        assert player.wpm == pytest.approx(20.0)
        assert player.duration == pytest.approx(PARIS_CONSTANT / 20)

    def test_duration_updates_wpm(self, player):
        player.duration = 0.1
        assert player.wpm == pytest.approx(12.0)

    def test_invalid_amplitude_leaves_config_unchanged(self, player):
        before = player.config
        with pytest.raises(InvalidConfiguration) as excinfo:
            player.configure(amplitude=1.5)
        assert excinfo.value.field == 'amplitude'
        assert player.config is before

    @pytest.mark.parametrize('attr,value', [
        ('wpm', 0),
        ('duration', -1),
        ('frequency', 0),
        ('volume', 2),
        ('waveform', 'pink-noise'),
    ])
    def test_setters_validate(self, player, attr, value):
        before = player.config
        with pytest.raises(InvalidConfiguration):
            setattr(player, attr, value)
        assert player.config == before

    def test_configure_with_config_object(self, player, generator):
        cfg = TimingConfig.from_wpm(25, frequency=750, amplitude=0.4, waveform='triangle')
        player.configure(cfg)
        assert player.config is cfg
        assert generator.frequency == 750.0
        assert generator.level == 0.4
        assert generator.waveform is Waveform.TRIANGLE

    def test_configure_rejects_non_config(self, player):
        with pytest.raises(InvalidConfiguration):
            player.configure({'wpm': 20})

    def test_settings_round_trip(self, player):
        settings = player.update_settings({'wpm': 15, 'frequency': 700, 'volume': 0.25, 'unknown': 1})
        assert settings['wpm'] == pytest.approx(15.0)
        assert settings['frequency'] == 700.0
        assert settings['volume'] == 0.25
        assert player.get_settings() == settings

    def test_live_changes_reach_generator_while_playing(self, player, generator):
        player.play('paris')
        player.frequency = 800
        player.volume = 0.3
        player.waveform = 'square'
        assert generator.frequency == 800.0
        assert generator.level == 0.3
        assert generator.waveform is Waveform.SQUARE

    def test_speed_change_does_not_touch_in_flight_schedule(self, player, generator):
        plan = player.play('paris')
        automation = generator.automation()
        player.wpm = 5
        assert player.schedule is plan
        assert generator.automation() == automation
        assert generator.stop_time == plan.end


class TestPlay:
    def test_play_schedules_generator(self, player, generator, clock):
        plan = player.play('et')
        assert player.is_playing
        assert plan.origin == clock.now
        assert generator.is_running
        assert generator.start_time == plan.origin
        assert generator.stop_time == plan.end

        expected = schedule(encode('et'), player.config, clock.now)
        assert plan == expected
        assert generator.automation() == [
            step for mark in plan.marks for step in ((mark.start, 1.0), (mark.stop, 0.0))
        ]

    def test_generator_gain_matches_transitions(self, player, generator):
        plan = player.play('a')
        for t, gain in plan.transitions:
            expected = 1.0 if gain > 0 else 0.0
            assert generator.gain_at(t) == expected

    @pytest.mark.parametrize('text', ['', '#$%'])
    def test_unencodable_text(self, player, generator, text):
        with pytest.raises(EmptyOrUnencodable):
            player.play(text)
        assert not player.is_playing
        assert not generator.is_running

    def test_spaces_play_as_silence(self, player, generator, clock):
        callback = MagicMock()
        player.add_ended_callback(callback)
        plan = player.play('  ')

        assert plan.marks == ()
        assert plan.duration == pytest.approx(2 * 7 * player.duration)
        assert generator.gain_at(plan.origin) == 0.0

        clock.advance_to(plan.end)
        callback.assert_called_once_with()
        assert not player.is_playing

    def test_non_string_text(self, player):
        with pytest.raises(EmptyOrUnencodable):
            player.play(None)  # type: ignore[arg-type]

    def test_play_while_playing(self):
        gen = _mock_generator(now=5.0)
        player = MorsePlayer(gen)
        plan = player.play('cq')
        gen.start.assert_called_once_with(plan.origin)

        with pytest.raises(AlreadyPlaying):
            player.play('de')

        assert player.is_playing
        assert player.schedule is plan
        gen.start.assert_called_once_with(plan.origin)

    def test_generator_start_failure_leaves_idle(self):
        gen = _mock_generator()
        gen.start.side_effect = RuntimeError('device busy')
        player = MorsePlayer(gen)
        with pytest.raises(RuntimeError):
            player.play('e')
        assert not player.is_playing
        gen.stop.assert_not_called()

    def test_can_play_after_device_failure(self, clock):
        class FlakyGenerator(OfflineToneGenerator):
            failures = 1

            def _on_start(self):
                if self.failures:
                    self.failures -= 1
                    raise RuntimeError('device busy')

        gen = FlakyGenerator(clock)
        player = MorsePlayer(gen)
        with pytest.raises(RuntimeError):
            player.play('e')
        assert gen.state == 'idle'
        assert not player.is_playing

        plan = player.play('e')
        assert player.is_playing
        assert gen.start_time == plan.origin

    def test_stop_scheduling_failure_halts_generator(self):
        gen = _mock_generator(now=3.0)
        gen.stop.side_effect = [RuntimeError('clock error'), None]
        player = MorsePlayer(gen)
        with pytest.raises(RuntimeError):
            player.play('e')

        assert not player.is_playing
        assert gen.stop.call_count == 2
        gen.stop.assert_called_with(3.0)


class TestCompletion:
    def test_natural_completion_notifies_once(self, player, clock):
        callback = MagicMock()
        player.add_ended_callback(callback)
        plan = player.play('e e')

        clock.advance(plan.duration / 2)
        assert player.is_playing
        callback.assert_not_called()

        clock.advance_to(plan.end)
        assert not player.is_playing
        callback.assert_called_once_with()

        clock.advance(10.0)
        callback.assert_called_once_with()
        assert player.get_status()['sessions_completed'] == 1

    def test_callbacks_deduplicated_and_removable(self, player, clock):
        first = MagicMock()
        second = MagicMock()
        player.add_ended_callback(first)
        player.add_ended_callback(first)
        player.add_ended_callback(second)
        player.remove_ended_callback(second)

        plan = player.play('t')
        clock.advance_to(plan.end)
        first.assert_called_once_with()
        second.assert_not_called()

    def test_failing_callback_does_not_block_others(self, player, clock):
        broken = MagicMock(side_effect=ValueError('boom'))
        healthy = MagicMock()
        player.add_ended_callback(broken)
        player.add_ended_callback(healthy)

        plan = player.play('t')
        clock.advance_to(plan.end)
        healthy.assert_called_once_with()
        assert not player.is_playing

    def test_can_play_again_after_completion(self, player, clock):
        plan = player.play('e')
        clock.advance_to(plan.end)
        second = player.play('t')
        assert second.origin == plan.end
        assert player.is_playing


class TestStop:
    def test_stop_while_idle_is_noop(self, player, generator):
        assert player.stop() is False
        assert not player.is_playing
        assert generator.state == 'idle'

    def test_stop_suppresses_completion(self, player, generator, clock):
        callback = MagicMock()
        player.add_ended_callback(callback)
        plan = player.play('paris')

        clock.advance(plan.duration / 3)
        assert player.stop() is True
        assert not player.is_playing
        assert generator.state == GEN_STOPPED
        assert generator.stop_time == clock.now

        clock.advance(plan.duration)
        callback.assert_not_called()
        status = player.get_status()
        assert status['sessions_stopped'] == 1
        assert status['sessions_completed'] == 0

    def test_stop_then_play_again(self, player, clock):
        player.play('paris')
        clock.advance(0.1)
        player.stop()
        plan = player.play('e')
        assert plan.origin == clock.now
        assert player.is_playing

    def test_stale_generator_end_ignored_after_stop(self):
        gen = _mock_generator()
        player = MorsePlayer(gen)
        callback = MagicMock()
        player.add_ended_callback(callback)
        player.play('e')
        generator_callback = gen.set_callback.call_args[0][0]

        player.stop()
        generator_callback()

        callback.assert_not_called()
        gen.stop.assert_called_with(gen.current_time)


class TestStatus:
    def test_status_while_playing(self, player):
        player.play('cq')
        status = player.get_status()
        assert status['running'] is True
        assert status['session']['text'] == 'cq'
        assert status['session']['schedule']['marks'] == 8
        assert status['settings']['wpm'] == pytest.approx(20.0)

    def test_status_idle(self, player):
        status = player.get_status()
        assert status['running'] is False
        assert status['session'] is None


class TestOfflineRender:
    def test_render_length_matches_schedule(self):
        cfg = TimingConfig.from_wpm(20, amplitude=0.5)
        samples = render_morse('e', cfg, sample_rate=8000)
        # one dot plus its element gap
        assert len(samples) == int(round(2 * cfg.unit_duration * 8000))
        assert np.max(np.abs(samples)) <= 0.5 + 1e-6
        assert np.max(np.abs(samples)) > 0.4

    def test_render_wav_header(self):
        wav = render_morse_wav('k', sample_rate=8000)
        assert wav[:4] == b'RIFF'
        assert wav[8:12] == b'WAVE'

    def test_render_rejects_unencodable(self):
        with pytest.raises(EmptyOrUnencodable):
            render_morse('###')


class TestGlobalPlayer:
    def test_get_morse_player_is_cached(self, monkeypatch):
        monkeypatch.setattr(morse_player_module, '_player', None)
        monkeypatch.setattr(
            morse_player_module,
            'create_tone_generator',
            lambda: OfflineToneGenerator(VirtualClock()),
        )
        first = morse_player_module.get_morse_player()
        assert morse_player_module.get_morse_player() is first

        morse_player_module.reset_morse_player()
        assert morse_player_module._player is None

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            morse_player_module.create_tone_generator('tape-deck')

    def test_timer_backend(self):
        gen = morse_player_module.create_tone_generator('timer')
        assert gen.__class__.__name__ == 'TimerToneGenerator'
