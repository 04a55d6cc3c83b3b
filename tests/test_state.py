#!/usr/bin/env python3
''' test the device state reducer '''

from sglink.messages import (
    ActiveTitle,
    ConsoleStatus,
    MediaStateMessage,
    PlaybackStatus,
    SoundLevel,
)
from sglink.state import DeviceState, MediaState, StateTracker, StatusUpdate


def make_status(title_id=0x3D705025, aum='Netflix_8wekyb3d8bbwe!App'):
    ''' console status with one focused title '''
    return ConsoleStatus(major_version=10,
                         minor_version=0,
                         build_number=22621,
                         locale='en-GB',
                         active_titles=[ActiveTitle(title_id=title_id, aum=aum, has_focus=True)])


def test_first_update_always_emitted():
    ''' the first snapshot goes out even when nothing differs '''
    tracker = StateTracker()
    assert tracker.apply(StatusUpdate()) == DeviceState()


def test_equal_payloads_emit_nothing():
    ''' structurally different but field-equal payloads are suppressed '''
    tracker = StateTracker()
    tracker.apply(StatusUpdate(power=True, volume=30))
    assert tracker.apply(StatusUpdate(power=True)) is None
    assert tracker.apply(StatusUpdate(volume=30, power=True)) is None


def test_single_field_change_emits_once():
    ''' one changed field gives one full snapshot '''
    tracker = StateTracker()
    tracker.apply(StatusUpdate(power=True, volume=30, mute=False))
    snapshot = tracker.apply(StatusUpdate(mute=True))
    assert snapshot == DeviceState(power=True, volume=30, mute=True)
    assert tracker.apply(StatusUpdate(mute=True)) is None


def test_absent_fields_keep_values():
    ''' partial updates merge onto the previous snapshot '''
    tracker = StateTracker()
    tracker.apply(StatusUpdate(power=True, title_id=7, reference='Home'))
    snapshot = tracker.apply(StatusUpdate(media_state=MediaState.PLAYING))
    assert snapshot.title_id == 7
    assert snapshot.reference == 'Home'
    assert snapshot.media_state is MediaState.PLAYING


def test_reset_forces_next_emission():
    ''' after a new session the first snapshot is emitted again '''
    tracker = StateTracker()
    update = StatusUpdate(power=True, volume=30, mute=False, media_state=MediaState.PLAYING)
    tracker.apply(update)
    assert tracker.apply(update) is None
    tracker.reset_for_session()
    assert tracker.apply(update) == DeviceState(power=True,
                                                volume=30,
                                                mute=False,
                                                media_state=MediaState.PLAYING)
    assert tracker.apply(update) is None


def test_mark_offline():
    ''' losing the session powers off and interrupts playback '''
    tracker = StateTracker()
    tracker.apply(StatusUpdate(power=True, media_state=MediaState.PLAYING))
    snapshot = tracker.mark_offline()
    assert snapshot.power is False
    assert snapshot.media_state is MediaState.INTERRUPTED
    assert tracker.mark_offline() is None


def test_mark_offline_keeps_forced_emission():
    ''' going offline does not use up the first-after-connect emission '''
    tracker = StateTracker()
    tracker.mark_offline()
    assert tracker.apply(StatusUpdate()) is not None


def test_from_console_status():
    ''' console status maps to power, title and identity '''
    update = StatusUpdate.from_console_status(make_status())
    assert update.carried() == {
        'power': True,
        'title_id': 0x3D705025,
        'reference': 'Netflix_8wekyb3d8bbwe!App',
        'firmware': '10.0.22621',
        'locale': 'en-GB',
    }


def test_from_console_status_without_titles():
    ''' no active title leaves title fields untouched '''
    status = make_status()
    status.active_titles = []
    update = StatusUpdate.from_console_status(status)
    assert update.title_id is None
    assert update.reference is None


def test_from_media_state():
    ''' playback status and sound level map onto media fields '''
    update = StatusUpdate.from_media_state(
        MediaStateMessage(title_id=1,
                          playback_status=PlaybackStatus.CHANGING,
                          sound_level=SoundLevel.MUTED))
    assert update.media_state is MediaState.LOADING
    assert update.mute is True
    assert update.power is True


def test_from_media_state_unknown_status():
    ''' unknown playback codes leave media state alone '''
    update = StatusUpdate.from_media_state(MediaStateMessage(title_id=1, playback_status=99))
    assert update.media_state is None


def test_from_json():
    ''' tv remote notifications carry volume and mute '''
    update = StatusUpdate.from_json({'params': {'volume': 30, 'muted': False}})
    assert update.carried() == {'volume': 30, 'mute': False}
    assert StatusUpdate.from_json({'params': {'other': 1}}) is None
    assert StatusUpdate.from_json({'response': 'GetConfiguration'}) is None


def test_from_json_ignores_bad_volume():
    ''' a volume that is not a number drops the notification '''
    assert StatusUpdate.from_json({'params': {'volume': 'loud'}}) is None
    assert StatusUpdate.from_json({'params': {'volume': [1]}}) is None
