# auth.py
import os
import logging
from datetime import datetime, timedelta

import bcrypt
import jwt
from botocore.exceptions import ClientError

from storage import dynamodb, convert_decimal

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# JWT Configuration
JWT_SECRET = os.getenv('JWT_SECRET', 'change-this-secret-in-production')
JWT_ALGORITHM = 'HS256'
JWT_EXPIRY_MINUTES = 30

ROLES = ('admin', 'accountant', 'viewer')

users_table = dynamodb.Table(os.getenv('USERS_TABLE', 'users'))


def hash_password(password):
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def verify_password(password, hashed):
    if not password or not hashed:
        return False
    return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))


def _public_user(user):
    """User record without the password hash"""
    return {
        'username': user['username'],
        'email': user.get('email', ''),
        'role': user.get('role', 'viewer'),
        'full_name': user.get('full_name', ''),
        'company_ids': convert_decimal(user.get('company_ids', [])),
    }


def generate_jwt(user):
    now = datetime.utcnow()
    payload = {
        **_public_user(user),
        'user_id': user['username'],
        'exp': now + timedelta(minutes=JWT_EXPIRY_MINUTES),
        'iat': now
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_jwt(token):
    """{"valid": True, "payload": ...} or {"valid": False, "error": ...}"""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return {"valid": True, "payload": payload}
    except jwt.ExpiredSignatureError:
        return {"valid": False, "error": "Token has expired"}
    except jwt.InvalidTokenError:
        return {"valid": False, "error": "Invalid token"}


def get_user(username):
    response = users_table.get_item(Key={'username': username})
    return response.get('Item')


def authenticate_user(username, password):
    if not username or not password:
        return {"success": False, "error": "Username and password are required"}

    try:
        user = get_user(username)

        if not user or not verify_password(password, user.get('password_hash')):
            return {"success": False, "error": "Invalid username or password"}

        if user.get('status', 'active') != 'active':
            return {"success": False, "error": "Account is suspended or inactive"}

        users_table.update_item(
            Key={'username': username},
            UpdateExpression='SET last_login = :timestamp',
            ExpressionAttributeValues={':timestamp': datetime.utcnow().isoformat()}
        )

        print(f"✅ User {username} authenticated successfully")

        return {
            "success": True,
            "token": generate_jwt(user),
            "user": _public_user(user),
            "expires_in": JWT_EXPIRY_MINUTES * 60
        }

    except ClientError as e:
        print(f"❌ DynamoDB error during login for {username}: {e}")
        return {"success": False, "error": "Database error occurred"}


def create_user_account(user_data):
    missing_fields = [f for f in ('username', 'password', 'email') if not user_data.get(f)]
    if missing_fields:
        return {"success": False, "error": f"Missing required fields: {', '.join(missing_fields)}"}

    role = user_data.get('role', 'viewer')
    if role not in ROLES:
        return {"success": False, "error": f"Invalid role: {role}"}

    try:
        if get_user(user_data['username']):
            return {"success": False, "error": "Username already exists"}

        users_table.put_item(Item={
            'username': user_data['username'],
            'password_hash': hash_password(user_data['password']),
            'email': user_data['email'],
            'role': role,
            'full_name': user_data.get('full_name', ''),
            'company_ids': user_data.get('company_ids', []),
            'status': 'active',
            'created_at': datetime.utcnow().isoformat()
        })

        print(f"✅ User account created: {user_data['username']}")
        return {"success": True, "message": "User account created successfully"}

    except ClientError as e:
        print(f"❌ DynamoDB error creating user: {e}")
        return {"success": False, "error": "Failed to create user account"}


def refresh_token(current_token):
    """New token for a still valid one, picking up role changes"""
    verification = verify_jwt(current_token)
    if not verification["valid"]:
        return {"success": False, "error": verification["error"]}

    try:
        user = get_user(verification["payload"]["username"])
        if not user:
            return {"success": False, "error": "User not found"}

        if user.get('status', 'active') != 'active':
            return {"success": False, "error": "Account is suspended or inactive"}

        return {
            "success": True,
            "token": generate_jwt(user),
            "expires_in": JWT_EXPIRY_MINUTES * 60
        }

    except ClientError as e:
        print(f"❌ Token refresh error: {e}")
        return {"success": False, "error": "Token refresh failed"}
