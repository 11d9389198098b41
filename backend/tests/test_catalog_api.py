from conftest import build_question_payload, build_test_payload


def test_register_login_and_token_checks(client):
    r = client.post('/auth/register', json={'username': 'alice', 'password': 'pass123'})
    assert r.status_code == 201
    assert r.json()['data']['role'] == 'student'
    # registering again is idempotent
    r = client.post('/auth/register', json={'username': 'alice', 'password': 'pass123'})
    assert r.status_code == 200
    r = client.post('/auth/login', json={'username': 'alice', 'password': 'wrong'})
    assert r.status_code == 401
    assert r.json()['kind'] == 'authentication'
    r = client.post('/auth/login', json={'username': 'alice', 'password': 'pass123'})
    assert r.status_code == 200
    token = r.json()['data']['access_token']
    assert client.get('/attempts/subjects', headers={'Authorization': f'Bearer {token}'}).status_code == 200
    r = client.get('/attempts/subjects', headers={'Authorization': 'Bearer not-a-jwt'})
    assert r.status_code == 401
    assert client.get('/attempts/subjects').status_code == 401


def test_request_id_is_echoed(client):
    r = client.get('/health', headers={'X-Request-ID': 'abc123'})
    assert r.status_code == 200
    assert r.headers['X-Request-ID'] == 'abc123'
    assert client.get('/health').headers['X-Request-ID']


def test_question_routes_require_admin(client, admin, student):
    _, admin_headers = admin
    _, headers = student
    assert client.post('/questions', json=build_question_payload(), headers=headers).status_code == 403
    r = client.post('/questions', json=build_question_payload(explanation='because'), headers=admin_headers)
    assert r.status_code == 201
    qid = r.json()['data']['id']
    # students do not see answers
    body = client.get(f'/questions/{qid}', headers=headers).json()['data']
    assert 'correct_options' not in body
    assert client.get(f'/questions/{qid}', headers=admin_headers).json()['data']['explanation'] == 'because'
    r = client.patch(f'/questions/{qid}', json={'correct_options': [0, 1]}, headers=admin_headers)
    assert r.status_code == 400
    assert r.json()['kind'] == 'validation'
    assert client.delete(f'/questions/{qid}', headers=admin_headers).status_code == 200
    assert client.get(f'/questions/{qid}', headers=admin_headers).status_code == 404


def test_test_lifecycle_and_publication(client, admin, student):
    _, admin_headers = admin
    _, headers = student
    q1 = client.post('/questions', json=build_question_payload(marks=4), headers=admin_headers).json()['data']['id']
    q2 = client.post('/questions', json=build_question_payload(marks=2), headers=admin_headers).json()['data']['id']
    r = client.post('/tests', json=build_test_payload([q1], status='draft'), headers=admin_headers)
    assert r.status_code == 201
    t = r.json()['data']
    assert (t['question_count'], t['total_marks']) == (1, 4)

    assert client.get(f"/tests/{t['id']}", headers=headers).status_code == 403
    assert client.get(f"/tests/{t['id']}/attempt", headers=headers).status_code == 403
    r = client.post('/attempts', json={'test_id': t['id'], 'answers': []}, headers=headers)
    assert r.status_code == 403
    assert r.json()['kind'] == 'authorization'

    r = client.patch(
        f"/tests/{t['id']}",
        json={'questions': [q1, q2], 'status': 'published', 'changes_description': 'Publish'},
        headers=admin_headers,
    )
    assert r.status_code == 200, r.text
    t = r.json()['data']
    assert (t['question_count'], t['total_marks']) == (2, 6)
    assert t['revision_history'][-1]['changes_description'] == 'Publish'

    view = client.get(f"/tests/{t['id']}/attempt", headers=headers).json()['data']
    assert [q['id'] for q in view['questions']] == [q1, q2]
    assert all('correct_options' not in q and 'explanation' not in q for q in view['questions'])
    assert view['marking_scheme'] == {'correct': 4, 'incorrect': -1, 'unattempted': 0}

    r = client.patch(f"/questions/{q2}", json={'marks': 5}, headers=admin_headers)
    assert r.status_code == 200
    assert client.get(f"/tests/{t['id']}", headers=headers).json()['data']['total_marks'] == 9


def test_test_validation_errors(client, admin):
    _, admin_headers = admin
    q1 = client.post('/questions', json=build_question_payload(), headers=admin_headers).json()['data']['id']
    r = client.post('/tests', json=build_test_payload([q1, 999999]), headers=admin_headers)
    assert r.status_code == 400
    r = client.post('/tests', json=build_test_payload([q1], test_category='PYQ', platform_test_type=None), headers=admin_headers)
    assert r.status_code == 400
    assert 'year' in r.json()['message']
    r = client.post('/tests', json=build_test_payload([q1], status='live'), headers=admin_headers)
    assert r.status_code == 400
    assert client.get('/tests/12345', headers=admin_headers).status_code == 404
