"""
Authentication Tests
"""
import pytest


class TestRegistration:
    """Test user registration"""

    def test_first_user_becomes_admin(self, client, app):
        """The very first account is an approved administrator and is logged in"""
        from knowledgebase.models import User

        response = client.post('/register', json={'email': 'Owner@Example.com', 'password': 'ownerpassword1'})

        assert response.status_code == 201
        assert response.json['user']['is_admin'] == True
        assert response.json['user']['status'] == 'approved'

        me = client.get('/me')
        assert me.status_code == 200
        assert me.json['user']['email'] == 'owner@example.com'

        with app.app_context():
            assert User.query.count() == 1

    def test_later_users_are_pending(self, client, admin_user):
        """Accounts after the first wait for approval"""
        response = client.post('/register', json={'email': 'second@example.com', 'password': 'secondpassword'})

        assert response.status_code == 201
        assert response.json['user']['status'] == 'pending'
        assert response.json['user']['is_admin'] == False
        assert client.get('/me').status_code == 401

    def test_register_form_data(self, client):
        """Registration accepts form posts"""
        response = client.post('/register', data={'email': 'form@example.com', 'password': 'formpassword'})
        assert response.status_code == 201

    def test_duplicate_email(self, client, admin_user):
        """Duplicate emails are refused"""
        response = client.post('/register', json={'email': 'admin@example.com', 'password': 'whatever123'})
        assert response.status_code == 409

    @pytest.mark.parametrize('payload', [
        {'email': '', 'password': 'longenough'},
        {'email': 'not-an-email', 'password': 'longenough'},
        {'email': 'short@example.com', 'password': 'short'},
    ])
    def test_invalid_registration(self, client, payload):
        """Missing email, bad email or short password is refused"""
        response = client.post('/register', json=payload)
        assert response.status_code == 400
        assert response.json['ok'] == False


class TestLogin:
    """Test user login"""

    def test_login_success(self, client, test_user, app):
        """Login should succeed with valid credentials"""
        from knowledgebase.models import User

        response = client.post('/login', json={'email': 'user@example.com', 'password': 'userpassword123'})

        assert response.status_code == 200
        assert response.json['user']['email'] == 'user@example.com'
        with app.app_context():
            assert User.query.filter_by(email='user@example.com').first().last_login_at is not None

    def test_login_invalid_password(self, client, test_user):
        """Login should fail with invalid password"""
        response = client.post('/login', json={'email': 'user@example.com', 'password': 'wrongpassword'})

        assert response.status_code == 401
        assert response.json['error'] == 'Invalid email or password.'

    def test_pending_user_cannot_login(self, client, pending_user):
        """Pending accounts cannot log in"""
        response = client.post('/login', json={'email': 'pending@example.com', 'password': 'pendingpassword123'})

        assert response.status_code == 403
        assert response.json['status'] == 'pending'

    def test_logout(self, authenticated_client):
        """Logout ends the session"""
        response = authenticated_client.post('/logout')

        assert response.status_code == 200
        assert response.json['message'] == 'You have been logged out.'
        assert authenticated_client.get('/me').status_code == 401


class TestAccessControl:
    """Test protected endpoints"""

    def test_api_requires_login(self, client):
        """Anonymous API calls get 401 JSON"""
        response = client.get('/api/folders')

        assert response.status_code == 401
        assert response.json == {'ok': False, 'error': 'Authentication required'}

    def test_revoked_user_is_blocked(self, app, authenticated_client, test_user):
        """Rejected users lose access on the next request"""
        from knowledgebase import db
        from knowledgebase.models import User

        with app.app_context():
            db.session.get(User, test_user).status = 'rejected'
            db.session.commit()

        response = authenticated_client.get('/api/folders')
        assert response.status_code == 403


class TestSetup:
    """Test first-run setup"""

    def test_setup_status(self, client):
        """A fresh install needs a first admin"""
        assert client.get('/setup/status').json['needs_first_admin'] == True

    def test_setup_status_with_admin(self, client, admin_user):
        """Setup is done once an admin exists"""
        assert client.get('/setup/status').json['needs_first_admin'] == False

    def test_complete_setup(self, admin_client):
        """Completing setup is recorded on the user"""
        response = admin_client.post('/setup/complete')

        assert response.status_code == 200
        assert response.json['user']['has_completed_setup'] == True
