"""GraphQL request builders.

Pure functions: each takes the desired-state payload and returns an
APIRequest for the RequestScheduler. Nothing here touches the network.
"""

from typing import Any

from ..models import APIRequest

ITEM_RESULT_FIELDS = "id externalReference tree { parentId path }"


def _input_type(prefix: str, item_type: str) -> str:
    return f"{prefix}{item_type[:1].upper()}{item_type[1:]}Input"


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


def build_create_item(input: dict[str, Any], item_type: str, language: str) -> APIRequest:
    query = f"""
mutation CREATE_ITEM($input: {_input_type("Create", item_type)}!, $language: String!) {{
  {item_type} {{
    create(input: $input, language: $language) {{ {ITEM_RESULT_FIELDS} }}
  }}
}}"""
    return APIRequest(query=query, variables={"input": input, "language": language})


def build_update_item(item_id: str, input: dict[str, Any], item_type: str, language: str) -> APIRequest:
    query = f"""
mutation UPDATE_ITEM($id: ID!, $input: {_input_type("Update", item_type)}!, $language: String!) {{
  {item_type} {{
    update(id: $id, input: $input, language: $language) {{ {ITEM_RESULT_FIELDS} }}
  }}
}}"""
    return APIRequest(query=query, variables={"id": item_id, "input": input, "language": language})


def build_update_item_component(item_id: str, language: str, input: dict[str, Any]) -> APIRequest:
    query = """
mutation UPDATE_ITEM_COMPONENT($itemId: ID!, $language: String!, $input: ComponentInput!) {
  item {
    updateComponent(itemId: $itemId, language: $language, input: $input) { id }
  }
}"""
    return APIRequest(query=query, variables={"itemId": item_id, "language": language, "input": input})


def build_update_variant_component(
    product_id: str, sku: str, language: str, input: dict[str, Any]
) -> APIRequest:
    query = """
mutation UPDATE_VARIANT_COMPONENT($productId: ID!, $sku: String!, $language: String!, $input: ComponentInput!) {
  product {
    updateVariantComponent(productId: $productId, sku: $sku, language: $language, input: $input) { id }
  }
}"""
    return APIRequest(
        query=query,
        variables={"productId": product_id, "sku": sku, "language": language, "input": input},
    )


def build_move_item(item_id: str, parent_id: str, position: int | None = None) -> APIRequest:
    tree_input: dict[str, Any] = {"parentId": parent_id}
    if position is not None:
        tree_input["position"] = position
    query = """
mutation MOVE_ITEM($itemId: ID!, $input: TreeNodeInput!) {
  tree {
    moveNode(itemId: $itemId, input: $input) { parentId position }
  }
}"""
    return APIRequest(query=query, variables={"itemId": item_id, "input": tree_input})


def build_publish_item(item_id: str, language: str) -> APIRequest:
    query = """
mutation PUBLISH_ITEM($id: ID!, $language: String!) {
  item {
    publish(id: $id, language: $language) { id }
  }
}"""
    return APIRequest(query=query, variables={"id": item_id, "language": language})


def build_get_item_by_external_reference(
    tenant_id: str, external_reference: str, language: str
) -> APIRequest:
    query = """
query GET_ITEM_BY_EXTERNAL_REFERENCE($tenantId: ID!, $externalReferences: [String!], $language: String!) {
  item {
    getMany(tenantId: $tenantId, externalReferences: $externalReferences, language: $language) {
      id
      shape { identifier }
      tree { parentId path }
    }
  }
}"""
    return APIRequest(
        query=query,
        variables={
            "tenantId": tenant_id,
            "externalReferences": [external_reference],
            "language": language,
        },
    )


def build_get_item_by_path(tenant_id: str, path: str, language: str) -> APIRequest:
    query = """
query GET_ITEM_BY_PATH($tenantId: ID!, $path: String!, $language: String!) {
  tree {
    getNodeByPath(tenantId: $tenantId, path: $path, language: $language) {
      itemId
      parentId
      item { shape { identifier } }
    }
  }
}"""
    return APIRequest(query=query, variables={"tenantId": tenant_id, "path": path, "language": language})


def build_get_product(item_id: str, language: str) -> APIRequest:
    query = """
query GET_PRODUCT($id: ID!, $language: String!) {
  product {
    get(id: $id, language: $language) {
      id
      vatType { id name }
      variants {
        sku
        name
        isDefault
        externalReference
        attributes { attribute value }
        images { key altText }
        priceVariants { identifier price }
        stockLocations { identifier stock meta { key value } }
      }
    }
  }
}"""
    return APIRequest(query=query, variables={"id": item_id, "language": language})


def build_get_item_topics(item_id: str, language: str) -> APIRequest:
    query = """
query GET_ITEM_TOPICS($itemId: ID!, $language: String!) {
  item {
    get(id: $itemId, language: $language) {
      topics { id }
    }
  }
}"""
    return APIRequest(query=query, variables={"itemId": item_id, "language": language})


def build_get_item_version(item_id: str, language: str) -> APIRequest:
    query = """
query GET_ITEM_VERSION($itemId: ID!, $language: String!) {
  item {
    get(id: $itemId, language: $language) {
      id
      version { label }
    }
  }
}"""
    return APIRequest(query=query, variables={"itemId": item_id, "language": language})


# ---------------------------------------------------------------------------
# Tenant
# ---------------------------------------------------------------------------


def build_get_tenant(identifier: str) -> APIRequest:
    query = """
query GET_TENANT($identifier: String!) {
  tenant {
    get(identifier: $identifier) {
      id
      rootItemId
      defaultLanguage
      availableLanguages { code name isDefault }
      vatTypes { id name percent }
    }
  }
}"""
    return APIRequest(query=query, variables={"identifier": identifier})


def build_get_shapes(tenant_id: str) -> APIRequest:
    query = """
query GET_SHAPES($tenantId: ID!) {
  shape {
    getMany(tenantId: $tenantId) {
      identifier
      name
      type
      components { id name type config }
      variantComponents { id name type config }
    }
  }
}"""
    return APIRequest(query=query, variables={"tenantId": tenant_id})


def build_get_price_variants(tenant_id: str) -> APIRequest:
    query = """
query GET_PRICE_VARIANTS($tenantId: ID!) {
  priceVariant {
    getMany(tenantId: $tenantId) { identifier name currency }
  }
}"""
    return APIRequest(query=query, variables={"tenantId": tenant_id})


def build_get_stock_locations(tenant_id: str) -> APIRequest:
    query = """
query GET_STOCK_LOCATIONS($tenantId: ID!) {
  stockLocation {
    getMany(tenantId: $tenantId) { identifier name }
  }
}"""
    return APIRequest(query=query, variables={"tenantId": tenant_id})


def build_get_subscription_plans(tenant_id: str) -> APIRequest:
    query = """
query GET_SUBSCRIPTION_PLANS($tenantId: ID!) {
  subscriptionPlan {
    getMany(tenantId: $tenantId) {
      id
      identifier
      name
      periods { id name }
      meteredVariables { id identifier name }
    }
  }
}"""
    return APIRequest(query=query, variables={"tenantId": tenant_id})


def build_get_topics(tenant_id: str, language: str) -> APIRequest:
    query = """
query GET_TOPICS($tenantId: ID!, $language: String!) {
  topic {
    getMany(tenantId: $tenantId, language: $language) { id name path parentId }
  }
}"""
    return APIRequest(query=query, variables={"tenantId": tenant_id, "language": language})


def build_get_grids(tenant_id: str, language: str) -> APIRequest:
    query = """
query GET_GRIDS($tenantId: ID!, $language: String!) {
  grid {
    getMany(tenantId: $tenantId, language: $language) { id name }
  }
}"""
    return APIRequest(query=query, variables={"tenantId": tenant_id, "language": language})


def build_add_language(tenant_id: str, code: str, name: str) -> APIRequest:
    query = """
mutation ADD_LANGUAGE($tenantId: ID!, $input: AddLanguageInput!) {
  tenant {
    addLanguage(tenantId: $tenantId, input: $input) { code name }
  }
}"""
    return APIRequest(query=query, variables={"tenantId": tenant_id, "input": {"code": code, "name": name}})


def build_create_price_variant(tenant_id: str, input: dict[str, Any]) -> APIRequest:
    query = """
mutation CREATE_PRICE_VARIANT($input: CreatePriceVariantInput!) {
  priceVariant {
    create(input: $input) { identifier name currency }
  }
}"""
    return APIRequest(query=query, variables={"input": {"tenantId": tenant_id, **input}})


def build_create_stock_location(tenant_id: str, input: dict[str, Any]) -> APIRequest:
    query = """
mutation CREATE_STOCK_LOCATION($input: CreateStockLocationInput!) {
  stockLocation {
    create(input: $input) { identifier name }
  }
}"""
    return APIRequest(query=query, variables={"input": {"tenantId": tenant_id, **input}})


def build_create_vat_type(tenant_id: str, input: dict[str, Any]) -> APIRequest:
    query = """
mutation CREATE_VAT_TYPE($input: CreateVatTypeInput!) {
  vatType {
    create(input: $input) { id name percent }
  }
}"""
    return APIRequest(query=query, variables={"input": {"tenantId": tenant_id, **input}})


def build_create_shape(tenant_id: str, input: dict[str, Any]) -> APIRequest:
    query = """
mutation CREATE_SHAPE($input: CreateShapeInput!) {
  shape {
    create(input: $input) {
      identifier
      name
      type
      components { id name type config }
      variantComponents { id name type config }
    }
  }
}"""
    return APIRequest(query=query, variables={"input": {"tenantId": tenant_id, **input}})


def build_create_topic(tenant_id: str, input: dict[str, Any], language: str) -> APIRequest:
    query = """
mutation CREATE_TOPIC($input: CreateTopicInput!, $language: String!) {
  topic {
    create(input: $input, language: $language) { id name path parentId }
  }
}"""
    return APIRequest(
        query=query, variables={"input": {"tenantId": tenant_id, **input}, "language": language}
    )


def build_create_grid(tenant_id: str, name: str, language: str) -> APIRequest:
    query = """
mutation CREATE_GRID($input: CreateGridInput!, $language: String!) {
  grid {
    create(input: $input, language: $language) { id name }
  }
}"""
    return APIRequest(
        query=query, variables={"input": {"tenantId": tenant_id, "name": name}, "language": language}
    )


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------


def build_generate_presigned_request(tenant_id: str, file_name: str, content_type: str) -> APIRequest:
    query = """
mutation GENERATE_PRESIGNED_REQUEST($tenantId: ID!, $fileName: String!, $contentType: String!) {
  fileUpload {
    generatePresignedRequest(tenantId: $tenantId, filename: $fileName, contentType: $contentType) {
      url
      fields { name value }
    }
  }
}"""
    return APIRequest(
        query=query,
        variables={"tenantId": tenant_id, "fileName": file_name, "contentType": content_type},
    )


def build_register_image(tenant_id: str, key: str) -> APIRequest:
    # Only speeds up image variant generation; a failure here is harmless
    query = """
mutation REGISTER_IMAGE($tenantId: ID!, $key: String!) {
  image {
    registerImage(tenantId: $tenantId, key: $key) { key }
  }
}"""
    return APIRequest(query=query, variables={"tenantId": tenant_id, "key": key}, suppress_errors=True)
