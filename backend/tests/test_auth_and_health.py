from flask_jwt_extended import create_access_token

from mikronoc import db
from mikronoc.models import User


def test_health_endpoint(client):
    response = client.get('/health')

    assert response.status_code == 200
    payload = response.get_json()
    assert payload == {'status': 'healthy', 'service': 'mikronoc-backend'}


def test_unknown_route_returns_json_404(client):
    response = client.get('/api/does-not-exist')

    assert response.status_code == 404
    assert response.get_json() == {'error': 'Not found'}


def test_noc_endpoints_require_token(client):
    response = client.get('/api/mikrotik/routers')

    assert response.status_code == 401


def test_token_for_deleted_user_is_rejected(client, app):
    with app.app_context():
        token = create_access_token(identity='999')

    response = client.get('/api/mikrotik/routers', headers={'Authorization': f'Bearer {token}'})

    assert response.status_code == 403


def test_inactive_admin_is_rejected(client, app):
    with app.app_context():
        user = User(email='inactive@test.local', role='admin', name='Inactive', is_active=False)
        db.session.add(user)
        db.session.commit()
        token = create_access_token(identity=str(user.id))

    response = client.get('/api/mikrotik/routers', headers={'Authorization': f'Bearer {token}'})

    assert response.status_code == 403


def test_non_numeric_identity_is_rejected(client, app):
    with app.app_context():
        token = create_access_token(identity='not-a-number')

    response = client.get('/api/mikrotik/routers', headers={'Authorization': f'Bearer {token}'})

    assert response.status_code == 401
    assert response.get_json()['error'] == 'Invalid user token'
