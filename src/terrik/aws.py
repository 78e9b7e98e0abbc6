"""Built-in AWS resource schemas for network, security, compute and key material."""

from __future__ import annotations

from .schema import ResourceSchema, resource_type

_ARN = frozenset({"id", "arn", "owner_id"})


@resource_type("aws_vpc")
class Vpc(ResourceSchema):
    force_new = frozenset({"cidr_block", "instance_tenancy"})
    computed = _ARN | {"default_route_table_id", "main_route_table_id"}
    id_prefix = "vpc"


@resource_type("aws_subnet")
class Subnet(ResourceSchema):
    force_new = frozenset({"vpc_id", "cidr_block", "availability_zone"})
    computed = _ARN
    id_prefix = "subnet"


@resource_type("aws_internet_gateway")
class InternetGateway(ResourceSchema):
    computed = _ARN
    id_prefix = "igw"


@resource_type("aws_route_table")
class RouteTable(ResourceSchema):
    force_new = frozenset({"vpc_id"})
    computed = _ARN
    id_prefix = "rtb"


@resource_type("aws_route_table_association")
class RouteTableAssociation(ResourceSchema):
    force_new = frozenset({"subnet_id", "gateway_id"})
    id_prefix = "rtbassoc"


@resource_type("aws_security_group")
class SecurityGroup(ResourceSchema):
    force_new = frozenset({"name", "name_prefix", "description", "vpc_id"})
    computed = _ARN
    id_prefix = "sg"


@resource_type("aws_key_pair")
class KeyPair(ResourceSchema):
    force_new = frozenset({"key_name", "public_key"})
    computed = frozenset({"id", "arn", "fingerprint", "key_pair_id"})
    id_prefix = "key"


@resource_type("aws_instance")
class Instance(ResourceSchema):
    force_new = frozenset(
        {
            "ami",
            "subnet_id",
            "availability_zone",
            "key_name",
            "private_ip",
            "associate_public_ip_address",
        }
    )
    computed = frozenset(
        {"id", "arn", "public_ip", "private_ip", "public_dns", "private_dns", "instance_state"}
    )
    id_prefix = "i"


@resource_type("tls_private_key")
class PrivateKey(ResourceSchema):
    force_new = frozenset({"algorithm", "rsa_bits", "ecdsa_curve"})
    computed = frozenset(
        {
            "id",
            "private_key_pem",
            "public_key_pem",
            "public_key_openssh",
            "public_key_fingerprint_md5",
        }
    )
    id_prefix = "tls"


@resource_type("aws_ami", data_source=True)
class Ami(ResourceSchema):
    """Most-recent image matching name/virtualization filters, owned by given accounts."""

    computed = frozenset(
        {"id", "image_id", "name", "architecture", "creation_date", "virtualization_type", "owner_id"}
    )
    id_prefix = "ami"
