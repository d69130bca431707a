import tempfile
import unittest

from vtt_board.config import Config
from vtt_board.server import create_app


class BoardStateRouteTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config = Config(storage_dir=self.tmp.name, secret_key='test-secret', testing=True, realtime_enabled=True)
        self.app, self.socketio = create_app(self.config)
        self.store = self.app.extensions['board_state'].store

    def tearDown(self):
        self.store.close_connection()
        self.tmp.cleanup()

    def client_for(self, role, user_id='1', username='user'):
        client = self.app.test_client()
        with client.session_transaction() as sess:
            sess['user_id'] = user_id
            sess['username'] = username
            sess['role'] = role
        return client

    def test_health(self):
        response = self.app.test_client().get('/health')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {'status': 'ok', 'version': 0})

    def test_unauthenticated_requests(self):
        client = self.app.test_client()
        response = client.get('/api/vtt/state')
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json(), {'success': False, 'error': 'Not authenticated'})
        response = client.post('/api/vtt/state', json={'boardState': {'mapUrl': 'x.png'}})
        self.assertEqual(response.status_code, 401)

    def test_gm_read_is_a_tagged_full_snapshot(self):
        response = self.client_for('dm').get('/api/vtt/state')
        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertTrue(body['success'])
        self.assertTrue(body['data']['boardState']['_fullSync'])
        self.assertEqual(body['data']['boardState']['_version'], 0)
        self.assertTrue(body['data']['pusher']['enabled'])

    def test_write_then_read(self):
        client = self.client_for('dm')
        response = client.post('/api/vtt/state', json={'boardState': {'placements': {'s1': [{'id': 'a', 'column': 2}]}}})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['data']['_version'], 1)

        board = client.get('/state').get_json()['data']['boardState']
        self.assertEqual(board['placements']['s1'][0]['column'], 2)
        self.assertEqual(board['_version'], 1)

    def test_invalid_payloads_answer_422(self):
        client = self.client_for('dm')
        response = client.post('/api/vtt/state', data='not json', content_type='application/json')
        self.assertEqual(response.status_code, 422)
        response = client.post('/api/vtt/state', json={'boardState': {}})
        self.assertEqual(response.status_code, 422)
        response = client.post('/state', json={'boardState': {'drawings': 'scribble'}})
        self.assertEqual(response.status_code, 422)
        self.assertFalse(response.get_json()['success'])

    def test_player_cannot_change_the_map(self):
        response = self.client_for('player', user_id='2').post('/api/vtt/state', json={'boardState': {'mapUrl': 'x.png'}})
        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.store.version(), 0)

    def test_unknown_route_answers_json(self):
        response = self.app.test_client().get('/api/vtt/nothing')
        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.get_json()['success'])


class BoardStateSocketTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        config = Config(storage_dir=self.tmp.name, secret_key='test-secret', testing=True, realtime_enabled=True)
        self.app, self.socketio = create_app(config)
        self.store = self.app.extensions['board_state'].store

        self.gm_http = self.app.test_client()
        self.player_http = self.app.test_client()
        for client, user_id, role in ((self.gm_http, '1', 'dm'), (self.player_http, '2', 'player')):
            with client.session_transaction() as sess:
                sess['user_id'] = user_id
                sess['username'] = role
                sess['role'] = role

        self.gm_socket = self.socketio.test_client(self.app, flask_test_client=self.gm_http)
        self.player_socket = self.socketio.test_client(self.app, flask_test_client=self.player_http)

    def tearDown(self):
        self.gm_socket.disconnect()
        self.player_socket.disconnect()
        self.store.close_connection()
        self.tmp.cleanup()

    def board_events(self, socket):
        return [event['args'][0] for event in socket.get_received() if event['name'] == 'board_state_updated']

    def test_hidden_tokens_only_reach_the_gm_room(self):
        self.gm_http.post('/api/vtt/state', json={'boardState': {
            'placements': {'s1': [{'id': 'ambush', 'hidden': True}, {'id': 'door'}]},
        }})

        gm_event, = self.board_events(self.gm_socket)
        player_event, = self.board_events(self.player_socket)
        self.assertEqual(sorted(entry['id'] for entry in gm_event['placements']['s1']), ['ambush', 'door'])
        self.assertEqual([entry['id'] for entry in player_event['placements']['s1']], ['door'])
        self.assertEqual(player_event['version'], 1)

    def test_join_battlemap_sends_projected_snapshot(self):
        self.gm_http.post('/api/vtt/state', json={'boardState': {'placements': {'s1': [{'id': 'ambush', 'hidden': True}]}}})
        self.player_socket.get_received()

        self.player_socket.emit('join_battlemap')
        snapshots = [event['args'][0] for event in self.player_socket.get_received() if event['name'] == 'battlemap_state']
        self.assertEqual(len(snapshots), 1)
        self.assertEqual(snapshots[0]['placements']['s1'], [])
        self.assertTrue(snapshots[0]['_fullSync'])


if __name__ == '__main__':
    unittest.main()
