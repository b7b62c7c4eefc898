"""GraphQL documents issued by the sync run."""

SHOP_LOCALES_QUERY = """
query getShopLocales {
  shopLocales {
    locale
    name
    primary
    published
  }
}
"""

PRODUCTS_QUERY = """
query getProducts($first: Int!, $after: String) {
  products(first: $first, after: $after) {
    pageInfo { hasNextPage endCursor }
    edges { node { id title handle descriptionHtml seo { title description } } }
  }
}
"""

COLLECTIONS_QUERY = """
query getCollections($first: Int!, $after: String) {
  collections(first: $first, after: $after) {
    pageInfo { hasNextPage endCursor }
    edges { node { id title handle descriptionHtml seo { title description } } }
  }
}
"""

ARTICLES_QUERY = """
query getArticles($first: Int!, $after: String) {
  articles(first: $first, after: $after) {
    pageInfo { hasNextPage endCursor }
    edges { node { id title handle body blog { id title } } }
  }
}
"""

PAGES_QUERY = """
query getPages($first: Int!, $after: String) {
  pages(first: $first, after: $after) {
    pageInfo { hasNextPage endCursor }
    edges { node { id title handle body } }
  }
}
"""

POLICIES_QUERY = """
query getShopPolicies {
  shop {
    shopPolicies { id title body type url }
  }
}
"""

THEME_RESOURCES_QUERY = """
query getThemeTranslatableResources(
  $first: Int!
  $resourceType: TranslatableResourceType!
  $after: String
) {
  translatableResources(first: $first, resourceType: $resourceType, after: $after) {
    pageInfo { hasNextPage endCursor }
    edges { node { resourceId translatableContent { key value digest locale } } }
  }
}
"""

RESOURCE_TRANSLATIONS_QUERY = """
query getTranslations($resourceId: ID!, $locale: String!) {
  translatableResource(resourceId: $resourceId) {
    translatableContent { key digest }
    translations(locale: $locale) { key value locale outdated }
  }
}
"""
