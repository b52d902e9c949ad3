"""
Admin Tests
"""
import io

from tests.conftest import LONG_TEXT, make_pdf


class TestUserManagement:
    """Test approving users and changing roles"""

    def test_list_users(self, admin_client, pending_user):
        """Admins see every account in creation order"""
        response = admin_client.get('/admin/users')

        assert response.status_code == 200
        assert [u['email'] for u in response.json['users']] == ['admin@example.com', 'pending@example.com']

    def test_approve_pending_user(self, app, admin_client, pending_user):
        """An approved account can log in afterwards"""
        response = admin_client.post(f'/admin/users/{pending_user}/status', json={'status': 'approved'})

        assert response.status_code == 200
        assert response.json['user']['status'] == 'approved'

        other = app.test_client()
        login = other.post('/login', json={'email': 'pending@example.com', 'password': 'pendingpassword123'})
        assert login.status_code == 200

    def test_invalid_status(self, admin_client, pending_user):
        """Unknown status values are refused"""
        response = admin_client.post(f'/admin/users/{pending_user}/status', json={'status': 'banned'})
        assert response.status_code == 400

    def test_unknown_user(self, admin_client):
        """Status changes for missing users return 404"""
        response = admin_client.post('/admin/users/999/status', json={'status': 'approved'})
        assert response.status_code == 404

    def test_cannot_revoke_self(self, admin_client, admin_user):
        """Admins cannot revoke their own access"""
        response = admin_client.post(f'/admin/users/{admin_user}/status', json={'status': 'rejected'})
        assert response.status_code == 400

    def test_cannot_demote_self(self, admin_client, admin_user):
        """Admins cannot remove their own administrator role"""
        response = admin_client.post(f'/admin/users/{admin_user}/admin', json={'is_admin': False})
        assert response.status_code == 400

    def test_promote_user(self, admin_client, test_user):
        """Admins can promote other users"""
        response = admin_client.post(f'/admin/users/{test_user}/admin', json={'is_admin': True})

        assert response.status_code == 200
        assert response.json['user']['is_admin'] == True

    def test_non_admin_forbidden(self, authenticated_client):
        """Regular users cannot reach admin endpoints"""
        response = authenticated_client.get('/admin/users')
        assert response.status_code == 403

    def test_audit_log_written(self, app, admin_client, pending_user):
        """Status changes are written to the audit log"""
        from knowledgebase.models import AuditLog

        admin_client.post(f'/admin/users/{pending_user}/status', json={'status': 'approved'})

        with app.app_context():
            assert AuditLog.query.filter_by(event_type='user_status_changed').count() == 1


class TestJobs:
    """Test bulk rescan and storage sync jobs (run inline under testing)"""

    def test_rescan_all(self, admin_client, fake_ocr):
        """Bulk rescan job should complete and report stats"""
        upload = admin_client.post('/api/files', data={
            'files': [(io.BytesIO(make_pdf(['', LONG_TEXT])), 'scan.pdf')],
        }, content_type='multipart/form-data')
        assert upload.status_code == 201

        response = admin_client.post('/admin/rescan')

        assert response.status_code == 202
        job = admin_client.get(f"/api/jobs/{response.json['job_id']}").json
        assert job['status'] == 'complete'
        assert job['progress'] == 100
        assert job['result'] == {'rescanned': 1, 'errors': 0}
        assert job['kind'] == 'rescan_all'

    def test_sync_in_local_mode(self, admin_client):
        """Storage sync is a no-op without S3"""
        response = admin_client.post('/admin/sync')

        job = admin_client.get(f"/api/jobs/{response.json['job_id']}").json
        assert job['status'] == 'complete'
        assert job['result'] == {'synced': 0, 'skipped': 0, 'errors': 0}
