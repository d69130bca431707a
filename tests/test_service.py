import json
import os
import tempfile
import time
import unittest

from vtt_board.broadcast import AUDIENCE_GM, AUDIENCE_PLAYERS, Notifier
from vtt_board.config import Config
from vtt_board.errors import AuthorizationError, BroadcastError, ValidationError
from vtt_board.normalize import board_signature
from vtt_board.service import BoardStateService, UserContext
from vtt_board.store import BoardStateStore

# stored pings are expired against the wall clock on read
NOW = int(time.time() * 1000)

GM = UserContext('1', 'dm', 'dm')
PLAYER = UserContext('2', 'pat', 'player')
ANONYMOUS = UserContext()


class RecordingNotifier(Notifier):
    def __init__(self, fail=False):
        self.fail = fail
        self.events = []

    def publish(self, event):
        if self.fail:
            raise BroadcastError('socket gone')
        self.events.append(event)

    def for_audience(self, audience):
        return [event for event in self.events if event.audience == audience]


class ServiceTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = BoardStateStore(self.tmp.name).open()
        self.notifier = RecordingNotifier()
        self.config = Config(storage_dir=self.tmp.name)
        self.service = BoardStateService(self.store, self.notifier, self.config, clock=lambda: NOW)

    def tearDown(self):
        self.store.close_connection()
        self.tmp.cleanup()

    def save(self, user, board_state, **controls):
        board_state = dict(board_state, **controls)
        return self.service.update_state(user, {'boardState': board_state})

    def placements(self, scene_id='s1'):
        return {entry['id']: entry for entry in self.store.read()['placements'].get(scene_id, [])}


class AuthorizationTests(ServiceTestCase):
    def test_anonymous_read_and_write_are_rejected(self):
        with self.assertRaises(AuthorizationError) as ctx:
            self.service.get_state(ANONYMOUS)
        self.assertEqual(ctx.exception.status_code, 401)
        with self.assertRaises(AuthorizationError):
            self.save(ANONYMOUS, {'mapUrl': 'x.png'})
        self.assertEqual(self.store.version(), 0)

    def test_player_gm_only_field_alone_is_forbidden(self):
        with self.assertRaises(AuthorizationError) as ctx:
            self.save(PLAYER, {'mapUrl': 'x.png'})
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(self.store.version(), 0)

    def test_player_gm_fields_are_ignored_alongside_allowed_ones(self):
        self.save(PLAYER, {'mapUrl': 'x.png', 'placements': {'s1': [{'id': 'p1', 'column': 2}]}})
        state = self.store.read()
        self.assertIsNone(state['mapUrl'])
        self.assertEqual(state['placements']['s1'][0]['column'], 2)

    def test_player_scene_settings_alone_change_nothing(self):
        with self.assertRaises(ValidationError):
            self.save(PLAYER, {'sceneState': {'s1': {'grid': {'size': 40}}}})


class ValidationTests(ServiceTestCase):
    def test_empty_payload(self):
        with self.assertRaises(ValidationError) as ctx:
            self.save(GM, {})
        self.assertEqual(ctx.exception.status_code, 422)

    def test_bad_shape_never_partially_applies(self):
        with self.assertRaises(ValidationError):
            self.save(GM, {'mapUrl': 'x.png', 'templates': 'circle'})
        self.assertIsNone(self.store.read()['mapUrl'])
        self.assertEqual(self.store.version(), 0)

    def test_malformed_entries_are_dropped_and_the_rest_saves(self):
        self.save(GM, {'placements': {'s1': [{'id': 'ok'}, {'column': 1}]}})
        self.assertEqual(list(self.placements()), ['ok'])


class GmWriteTests(ServiceTestCase):
    def test_write_bumps_version_and_stamps_metadata(self):
        response = self.save(GM, {'mapUrl': 'x.png'})
        self.assertEqual(response['_version'], 1)
        metadata = self.store.read()['metadata']
        self.assertEqual(metadata['updatedAt'], NOW)
        self.assertEqual((metadata['authorId'], metadata['authorRole'], metadata['authorIsGm']), ('1', 'gm', True))
        self.assertEqual(metadata['signature'], board_signature(self.store.read()))

    def test_full_collection_replaces_only_the_scenes_sent(self):
        self.save(GM, {'placements': {'s1': [{'id': 'a'}, {'id': 'b'}], 's2': [{'id': 'c'}]}})
        self.save(GM, {'placements': {'s1': [{'id': 'a'}]}})
        state = self.store.read()
        self.assertEqual([entry['id'] for entry in state['placements']['s1']], ['a'])
        self.assertEqual([entry['id'] for entry in state['placements']['s2']], ['c'])

    def test_delta_write_preserves_other_entries(self):
        self.save(GM, {'placements': {'s1': [{'id': 'a'}, {'id': 'b'}]}})
        self.save(GM, {'placements': {'s1': [{'id': 'a', 'column': 4, '_lastModified': 5}]}}, _deltaOnly=True)
        placements = self.placements()
        self.assertEqual(sorted(placements), ['a', 'b'])
        self.assertEqual(placements['a']['column'], 4)

    def test_scene_settings_update_one_section(self):
        self.save(GM, {'sceneState': {'s1': {'grid': {'size': 40}, 'fogOfWar': {'enabled': True, 'revealedCells': ['1,1']}}}})
        self.save(GM, {'sceneState': {'s1': {'grid': {'size': 80}}}})
        scene = self.store.read()['sceneState']['s1']
        self.assertEqual(scene['grid']['size'], 80)
        self.assertEqual(scene['fogOfWar']['revealedCells'], {'1,1': True})

    def test_empty_fog_map_is_stored_as_object(self):
        self.save(GM, {'sceneState': {'s1': {'fogOfWar': {'enabled': True, 'revealedCells': []}}}})
        with open(os.path.join(self.tmp.name, 'board-state.json'), encoding='utf-8') as handle:
            stored = json.load(handle)
        self.assertEqual(stored['sceneState']['s1']['fogOfWar']['revealedCells'], {})


class PlayerWriteTests(ServiceTestCase):
    def setUp(self):
        super().setUp()
        self.save(GM, {'placements': {'s1': [{'id': 'gm-token', 'hidden': True, 'column': 1}]}})
        self.save(PLAYER, {'placements': {'s1': [{'id': 'p1', 'column': 0}, {'id': 'p2', 'column': 0}]}})
        self.notifier.events.clear()

    def test_full_collection_deletes_only_player_entries(self):
        self.save(PLAYER, {'placements': {'s1': [{'id': 'p1', 'column': 3}]}})
        self.assertEqual(sorted(self.placements()), ['gm-token', 'p1'])

    def test_entries_are_stamped_with_their_author(self):
        placements = self.placements()
        self.assertEqual((placements['gm-token']['authorIsGm'], placements['gm-token']['authorRole']), (True, 'gm'))
        self.assertEqual(placements['p1']['authorRole'], 'player')
        self.assertNotIn('authorIsGm', placements['p1'])

    def test_gm_resending_a_player_token_keeps_player_authorship(self):
        self.save(GM, {'placements': {'s1': [{'id': 'p1', 'column': 4, '_lastModified': 9}]}}, _deltaOnly=True)
        token = self.placements()['p1']
        self.assertEqual(token['authorRole'], 'player')
        self.assertEqual(token['column'], 4)
        self.save(PLAYER, {'placements': {'s1': [{'id': 'p2'}]}})
        self.assertEqual(sorted(self.placements()), ['gm-token', 'p2'])

    def test_saving_the_projected_view_keeps_hidden_gm_tokens(self):
        visible = self.service.snapshot_for(PLAYER)['placements']['s1']
        self.assertEqual(sorted(entry['id'] for entry in visible), ['p1', 'p2'])
        self.save(PLAYER, {'placements': {'s1': visible}})
        placements = self.placements()
        self.assertEqual(sorted(placements), ['gm-token', 'p1', 'p2'])
        self.assertTrue(placements['gm-token']['hidden'])

    def test_player_move_of_gm_token_keeps_authorship_and_visibility(self):
        self.save(PLAYER, {'placements': {'s1': [
            {'id': 'gm-token', 'column': 6, 'hidden': False}, {'id': 'p1'}, {'id': 'p2'},
        ]}})
        token = self.placements()['gm-token']
        self.assertEqual(token['column'], 6)
        self.assertEqual(token['authorRole'], 'gm')
        self.assertTrue(token['hidden'])

    def test_player_delta_cannot_claim_gm_authorship(self):
        self.save(PLAYER, {'placements': {'s1': [{'id': 'p3', 'gmOnly': True, 'column': 2}]}}, _deltaOnly=True)
        token = self.placements()['p3']
        self.assertNotIn('gmOnly', token)
        self.assertIn('p1', self.placements())

    def test_two_players_deltas_both_land(self):
        self.save(PLAYER, {'placements': {'s1': [{'id': 'p1', 'column': 3, '_lastModified': 10}]}}, _deltaOnly=True)
        other = UserContext('3', 'sam', 'player')
        self.save(other, {'placements': {'s1': [{'id': 'p2', 'column': 7, '_lastModified': 11}]}}, _deltaOnly=True)
        placements = self.placements()
        self.assertEqual((placements['p1']['column'], placements['p2']['column']), (3, 7))

    def test_player_combat_update_is_merged(self):
        self.save(PLAYER, {'sceneState': {'s1': {'combat': {'active': True, 'sequence': 1}}}})
        scene = self.store.read()['sceneState']['s1']
        self.assertTrue(scene['combat']['active'])
        self.assertEqual(scene['combat']['sequence'], 1)

    def test_player_response_and_metadata(self):
        response = self.save(PLAYER, {'placements': {'s1': [{'id': 'p1'}, {'id': 'p2'}]}})
        self.assertNotIn('gm-token', [entry['id'] for entry in response['placements']['s1']])
        self.assertEqual(response['_version'], 3)
        metadata = self.store.read()['metadata']
        self.assertEqual((metadata['authorRole'], metadata['authorIsGm']), ('player', False))


class HiddenTokenDeltaTests(ServiceTestCase):
    def setUp(self):
        super().setUp()
        self.save(GM, {'placements': {'s1': [
            {'id': 't1', 'column': 3, 'row': 5, 'width': 2, 'hidden': True, '_lastModified': 100},
        ]}})

    def move(self, column, row, timestamp):
        self.save(PLAYER, {'placements': {'s1': [
            {'id': 't1', 'column': column, 'row': row, '_lastModified': timestamp},
        ]}}, _deltaOnly=True)
        return self.placements()['t1']

    def test_newer_player_delta_moves_but_stays_hidden(self):
        token = self.move(8, 12, 200)
        self.assertEqual((token['column'], token['row']), (8, 12))
        self.assertTrue(token['hidden'])
        self.assertEqual(token['width'], 2)
        self.assertEqual(token['authorRole'], 'gm')

    def test_older_player_delta_is_ignored(self):
        token = self.move(8, 12, 50)
        self.assertEqual((token['column'], token['row']), (3, 5))
        self.assertTrue(token['hidden'])

    def test_player_delta_cannot_unhide(self):
        self.save(PLAYER, {'placements': {'s1': [{'id': 't1', 'hidden': False, '_lastModified': 300}]}}, _deltaOnly=True)
        self.assertTrue(self.placements()['t1']['hidden'])
        self.assertEqual(self.service.snapshot_for(PLAYER)['placements']['s1'], [])


class ReadTests(ServiceTestCase):
    def setUp(self):
        super().setUp()
        self.save(GM, {'placements': {'s1': [
            {'id': 'hidden', 'hidden': True},
            {'id': 'goblin', 'combatTeam': 'enemy', 'monsterId': 'gob'},
        ]}})

    def test_player_read_is_projected(self):
        data = self.service.get_state(PLAYER)
        board = data['boardState']
        self.assertEqual([entry['id'] for entry in board['placements']['s1']], ['goblin'])
        self.assertNotIn('monsterId', board['placements']['s1'][0])
        self.assertTrue(board['_fullSync'])
        self.assertEqual(board['_version'], 1)

    def test_gm_read_is_complete(self):
        data = self.service.get_state(GM)
        self.assertEqual(len(data['boardState']['placements']['s1']), 2)
        self.assertEqual(data['pusher'], {'enabled': True, 'channel': 'campaign', 'event': 'board_state_updated'})
        self.assertEqual(data['scenes'], {})
        self.assertEqual(data['tokens'], {})


class BroadcastFromServiceTests(ServiceTestCase):
    def test_players_never_receive_hidden_tokens(self):
        self.save(GM, {'placements': {'s1': [{'id': 'ambush', 'hidden': True}, {'id': 'door'}]}}, _socketId='sid-9')

        gm_event, = self.notifier.for_audience(AUDIENCE_GM)
        player_event, = self.notifier.for_audience(AUDIENCE_PLAYERS)
        self.assertEqual(sorted(entry['id'] for entry in gm_event.payload['placements']['s1']), ['ambush', 'door'])
        self.assertEqual([entry['id'] for entry in player_event.payload['placements']['s1']], ['door'])
        self.assertEqual(gm_event.socket_id, 'sid-9')
        self.assertEqual(player_event.payload['version'], 1)
        self.assertEqual(player_event.payload['changedFields'], ['placements'])

    def test_broadcast_failure_does_not_fail_the_write(self):
        self.service.notifier = RecordingNotifier(fail=True)
        with self.assertLogs('vtt_board.broadcast', level='WARNING'):
            response = self.save(GM, {'mapUrl': 'x.png'})
        self.assertEqual(response['_version'], 1)
        self.assertEqual(self.store.read()['mapUrl'], 'x.png')

    def test_pings_are_merged_and_broadcast(self):
        self.save(PLAYER, {'pings': [{'id': 'p1', 'x': 0.5, 'y': 0.5, 'createdAt': NOW}]})
        self.save(GM, {'pings': [{'id': 'p2', 'x': 0.1, 'y': 0.1, 'createdAt': NOW}]})
        self.assertEqual(sorted(ping['id'] for ping in self.store.read()['pings']), ['p1', 'p2'])
        self.assertEqual(self.notifier.events[-1].payload['changedFields'], ['pings'])


if __name__ == '__main__':
    unittest.main()
