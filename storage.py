# storage.py
import os
from decimal import Decimal

import boto3
from botocore.exceptions import ClientError

AWS_REGION = os.getenv('AWS_REGION', 'eu-north-1')
S3_BUCKET_NAME = os.getenv('S3_BUCKET_NAME', 'company-documents-2025')

dynamodb = boto3.resource('dynamodb', region_name=AWS_REGION)


def get_s3_client():
    """S3 client using explicit credentials when they are configured"""
    aws_access_key = os.getenv('AWS_ACCESS_KEY_ID')
    aws_secret_key = os.getenv('AWS_SECRET_ACCESS_KEY')

    if aws_access_key and aws_secret_key:
        return boto3.client(
            's3',
            aws_access_key_id=aws_access_key,
            aws_secret_access_key=aws_secret_key,
            region_name=AWS_REGION
        )
    return boto3.client('s3', region_name=AWS_REGION)


def download_from_s3(s3_key, bucket_name=None):
    """Download file from S3 using key"""
    try:
        if not bucket_name:
            bucket_name = S3_BUCKET_NAME

        print(f"Downloading from bucket: {bucket_name}, key: {s3_key}")

        response = get_s3_client().get_object(Bucket=bucket_name, Key=s3_key)
        return response['Body'].read()

    except Exception as e:
        raise Exception(f"Error downloading from S3: {str(e)}")


def generate_presigned_url(s3_key, expiration=3600, bucket_name=None):
    """Generate a presigned URL for S3 object"""
    try:
        return get_s3_client().generate_presigned_url(
            'get_object',
            Params={'Bucket': bucket_name or S3_BUCKET_NAME, 'Key': s3_key},
            ExpiresIn=expiration
        )
    except ClientError as e:
        print(f"❌ Error generating presigned URL for {s3_key}: {e}")
        return None


def convert_decimal(obj):
    """Convert DynamoDB Decimal objects to regular Python numbers"""
    if isinstance(obj, dict):
        return {k: convert_decimal(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [convert_decimal(v) for v in obj]
    elif isinstance(obj, Decimal):
        # Convert to int if it's a whole number, otherwise float
        if obj % 1 == 0:
            return int(obj)
        else:
            return float(obj)
    else:
        return obj


def convert_to_decimal(obj):
    """Convert floats to Decimal for DynamoDB compatibility"""
    if isinstance(obj, dict):
        return {k: convert_to_decimal(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [convert_to_decimal(v) for v in obj]
    elif isinstance(obj, float):
        return Decimal(str(obj))
    else:
        return obj


def scan_all(table, **scan_kwargs):
    """Full table scan following LastEvaluatedKey"""
    items = []
    response = table.scan(**scan_kwargs)
    items.extend(response.get('Items', []))

    while 'LastEvaluatedKey' in response:
        scan_kwargs['ExclusiveStartKey'] = response['LastEvaluatedKey']
        response = table.scan(**scan_kwargs)
        items.extend(response.get('Items', []))

    return convert_decimal(items)
